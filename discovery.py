"""Find the asset references of a rendered document or a stylesheet."""

from __future__ import annotations

import re
from typing import Iterator, List, Set, Tuple, Union

from bs4 import BeautifulSoup, Tag

from urls import resolve


CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)(.*?)\1\s*\)""", re.IGNORECASE | re.DOTALL)
SRCSET_URL_RE = re.compile(r"[\s,]*(\S+)")

# (tag, attribute, kind) where kind is "url", "srcset" or "style"
Slot = Tuple[Tag, str, str]


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def srcset_spans(value: str) -> List[Tuple[int, int]]:
    """(start, end) offsets of each candidate URL in a srcset value.

    A candidate URL is the first whitespace-delimited token; a trailing comma
    on that token ends the candidate, otherwise everything up to the next
    comma is its descriptor. Commas inside a token belong to the URL, as in
    the HTML srcset parser, so "a.png,b.png" is one URL while "a.png, b.png"
    is two.
    """
    spans: List[Tuple[int, int]] = []
    pos = 0
    while pos < len(value):
        match = SRCSET_URL_RE.match(value, pos)
        if match is None:
            break
        start, end = match.span(1)
        token = match.group(1)
        if token.endswith(","):
            spans.append((start, start + len(token.rstrip(","))))
            pos = end
            continue
        spans.append((start, end))
        comma = value.find(",", end)
        pos = len(value) if comma == -1 else comma + 1
    return spans


def srcset_urls(value: str) -> List[str]:
    return [value[start:end] for start, end in srcset_spans(value) if end > start]


def css_urls(text: str) -> List[str]:
    out: List[str] = []
    for match in CSS_URL_RE.finditer(text):
        value = match.group(2).strip()
        if value:
            out.append(value)
    return out


def _rel_tokens(tag: Tag) -> str:
    rel = tag.get("rel") or ""
    if isinstance(rel, list):
        rel = " ".join(rel)
    return rel.lower()


def reference_slots(soup: BeautifulSoup) -> Iterator[Slot]:
    """Yield every attribute of the document that can hold an asset reference."""
    for tag in soup.find_all("img", src=True):
        yield tag, "src", "url"
    for tag in soup.find_all(srcset=True):
        yield tag, "srcset", "srcset"
    for tag in soup.find_all("link", href=True):
        rel = _rel_tokens(tag)
        if "stylesheet" in rel.split() or "preload" in rel or "icon" in rel:
            yield tag, "href", "url"
    for tag in soup.find_all("script", src=True):
        yield tag, "src", "url"
    for media in soup.find_all(["video", "audio"]):
        if media.get("src"):
            yield media, "src", "url"
        for source in media.find_all("source", src=True):
            yield source, "src", "url"
    for tag in soup.find_all(style=True):
        yield tag, "style", "style"


def _raw_references(value: str, kind: str) -> List[str]:
    if kind == "srcset":
        return srcset_urls(value)
    if kind == "style":
        return css_urls(value)
    return [value.strip()]


def discover_html(document: Union[str, BeautifulSoup], base_url: str) -> Set[str]:
    soup = parse_html(document) if isinstance(document, str) else document
    found: Set[str] = set()
    for tag, attr, kind in reference_slots(soup):
        value = tag.get(attr)
        if not isinstance(value, str):
            continue
        for raw in _raw_references(value, kind):
            if raw.lower().startswith("data:"):
                continue
            resolved = resolve(raw, base_url)
            if resolved:
                found.add(resolved)
    return found


def discover_css(text: str, base_url: str) -> Set[str]:
    found: Set[str] = set()
    for raw in css_urls(text):
        if raw.lower().startswith("data:"):
            continue
        resolved = resolve(raw, base_url)
        if resolved:
            found.add(resolved)
    return found
