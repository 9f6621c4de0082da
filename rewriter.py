"""Point a rendered document at its downloaded assets.

Two passes. The node pass walks the same attributes discovery scans, resolves
each reference against the page URL and swaps in the local path, keeping
``srcset`` descriptors as written. The text pass then replaces any absolute
URL still left in the markup (``<style>`` blocks, unusual attributes),
longest URL first so that a URL which is a prefix of another never clobbers
the longer one's replacement.
"""

from __future__ import annotations

import re
from typing import Dict, Mapping, Optional

from discovery import CSS_URL_RE, parse_html, reference_slots, srcset_spans
from urls import resolve


def _lookup(raw: str, base_url: str, asset_map: Mapping[str, str]) -> Optional[str]:
    if raw.lower().startswith("data:"):
        return None
    resolved = resolve(raw, base_url)
    if resolved is None:
        return None
    return asset_map.get(resolved)


def rewrite_srcset(value: str, base_url: str, asset_map: Mapping[str, str]) -> str:
    out = value
    for start, end in reversed(srcset_spans(value)):
        if end <= start:
            continue
        local = _lookup(value[start:end], base_url, asset_map)
        if local:
            out = out[:start] + local + out[end:]
    return out


def rewrite_css_urls(text: str, base_url: str, asset_map: Mapping[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        quote, raw = match.group(1), match.group(2).strip()
        local = _lookup(raw, base_url, asset_map) if raw else None
        if local is None:
            return match.group(0)
        return f"url({quote}{local}{quote})"

    return CSS_URL_RE.sub(_replace, text)


def rewrite_nodes(html: str, base_url: str, asset_map: Mapping[str, str]) -> str:
    soup = parse_html(html)
    changed = False
    for tag, attr, kind in reference_slots(soup):
        value = tag.get(attr)
        if not isinstance(value, str):
            continue
        if kind == "srcset":
            updated = rewrite_srcset(value, base_url, asset_map)
        elif kind == "style":
            updated = rewrite_css_urls(value, base_url, asset_map)
        else:
            updated = _lookup(value.strip(), base_url, asset_map) or value
        if updated != value:
            tag[attr] = updated
            changed = True
    if not changed:
        return html
    return str(soup)


def rewrite_text(text: str, asset_map: Mapping[str, str]) -> str:
    for url, local in sorted(asset_map.items(), key=lambda item: len(item[0]), reverse=True):
        escaped = re.escape(url)
        text = re.sub(
            rf"""(src|href|srcset)=(["']){escaped}\2""",
            lambda m, local=local: f"{m.group(1)}={m.group(2)}{local}{m.group(2)}",
            text,
        )
        text = re.sub(
            rf"(src|href|srcset)={escaped}(?=[\s>])",
            lambda m, local=local: f"{m.group(1)}={local}",
            text,
        )
        text = re.sub(
            rf"""url\((["']?){escaped}\1\)""",
            lambda m, local=local: f"url({m.group(1)}{local}{m.group(1)})",
            text,
        )
        text = text.replace(url, local)
    return text


def rewrite_document(html: str, asset_map: Mapping[str, str], base_url: str) -> str:
    if not asset_map:
        return html
    snapshot: Dict[str, str] = dict(asset_map)
    return rewrite_text(rewrite_nodes(html, base_url, snapshot), snapshot)
