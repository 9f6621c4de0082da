from __future__ import annotations

import unittest

from discovery import css_urls, discover_css, discover_html, srcset_urls


BASE = "https://x.test/blog/post.html"

PAGE = """<!DOCTYPE html>
<html>
<head>
  <link rel="stylesheet" href="/css/site.css">
  <link rel="preload" href="/fonts/main.woff2" as="font">
  <link rel="modulepreload" href="/js/mod.mjs">
  <link rel="shortcut icon" href="/favicon.ico">
  <link rel="canonical" href="https://x.test/blog/post.html">
  <script src="//cdn.test/lib.js"></script>
  <script>var config = {"image": "/should/not/be/found.png"};</script>
</head>
<body style="background: url('/img/bg.jpg')">
  <img src="hero.png" srcset="hero-1x.png 1x, hero-2x.png 2x">
  <picture><source srcset="/img/wide.webp 1200w, /img/narrow.webp 600w"></picture>
  <div style="background-image: url(/img/a.png), url(&quot;/img/b.png&quot;)"></div>
  <video src="/media/intro.mp4"><source src="/media/intro.webm"></video>
  <audio><source src="/media/theme.mp3"></audio>
  <a href="/about.html">About</a>
</body>
</html>
"""


class DiscoverHtmlTest(unittest.TestCase):
    def test_collects_every_reference_kind(self) -> None:
        found = discover_html(PAGE, BASE)
        expected = {
            "https://x.test/css/site.css",
            "https://x.test/fonts/main.woff2",
            "https://x.test/js/mod.mjs",
            "https://x.test/favicon.ico",
            "https://cdn.test/lib.js",
            "https://x.test/img/bg.jpg",
            "https://x.test/blog/hero.png",
            "https://x.test/blog/hero-1x.png",
            "https://x.test/blog/hero-2x.png",
            "https://x.test/img/wide.webp",
            "https://x.test/img/narrow.webp",
            "https://x.test/img/a.png",
            "https://x.test/img/b.png",
            "https://x.test/media/intro.mp4",
            "https://x.test/media/intro.webm",
            "https://x.test/media/theme.mp3",
        }
        self.assertEqual(found, expected)

    def test_ignores_links_scripts_bodies_and_anchors(self) -> None:
        found = discover_html(PAGE, BASE)
        self.assertNotIn("https://x.test/about.html", found)
        self.assertNotIn("https://x.test/should/not/be/found.png", found)
        self.assertNotIn("https://x.test/blog/post.html", found)

    def test_data_uri_yields_nothing(self) -> None:
        html = '<img src="data:image/png;base64,iVBORw0KGgo="><img srcset="data:image/gif;base64,R0lG 1x">'
        self.assertEqual(discover_html(html, BASE), set())

    def test_duplicates_collapse(self) -> None:
        html = '<img src="/a.png"><img src="https://x.test/a.png"><img src="../a.png">'
        self.assertEqual(discover_html(html, BASE), {"https://x.test/a.png"})


class DiscoverCssTest(unittest.TestCase):
    def test_every_url_occurrence(self) -> None:
        css = """
        @font-face { src: url("../fonts/f.woff2") format("woff2"), url('../fonts/f.woff') format("woff"); }
        .hero { background: url(../img/hero.jpg) no-repeat; }
        .icon { background: url(data:image/svg+xml;base64,PHN2Zz4=); }
        @import url(print.css);
        """
        found = discover_css(css, "https://x.test/assets/css/site.css")
        self.assertEqual(
            found,
            {
                "https://x.test/assets/fonts/f.woff2",
                "https://x.test/assets/fonts/f.woff",
                "https://x.test/assets/img/hero.jpg",
                "https://x.test/assets/css/print.css",
            },
        )

    def test_css_urls_handles_quotes_and_spacing(self) -> None:
        self.assertEqual(
            css_urls("a{b:url( 'x.png' )} c{d:url(\"y.png\")} e{f:url(z.png)} g{h:url()}"),
            ["x.png", "y.png", "z.png"],
        )


class SrcsetTest(unittest.TestCase):
    def test_first_token_of_each_candidate(self) -> None:
        self.assertEqual(srcset_urls("a.png 1x,  b.png 2x ,c.png"), ["a.png", "b.png", "c.png"])
        self.assertEqual(srcset_urls(""), [])

    def test_commas_inside_urls(self) -> None:
        self.assertEqual(
            srcset_urls("data:image/gif;base64,R0lG 1x, /b.png 2x"),
            ["data:image/gif;base64,R0lG", "/b.png"],
        )
        self.assertEqual(
            srcset_urls("/img/w_100,h_50/a.jpg 100w, /img/w_200,h_100/a.jpg 200w"),
            ["/img/w_100,h_50/a.jpg", "/img/w_200,h_100/a.jpg"],
        )
        self.assertEqual(srcset_urls("a.png, b.png"), ["a.png", "b.png"])
        self.assertEqual(srcset_urls("a.png,b.png"), ["a.png,b.png"])
        self.assertEqual(srcset_urls("a.png 1x,b.png 2x"), ["a.png", "b.png"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
