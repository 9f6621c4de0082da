from __future__ import annotations

import hashlib
import posixpath
import re
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse

from errors import InvalidUrl


SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")
SAFE_HOST_RE = re.compile(r"[^A-Za-z0-9-]")
HOST_PORT_RE = re.compile(r"^[^:]+:\d+(?:[?#]|$)")
OPAQUE_SCHEMES = ("mailto", "javascript", "tel", "data", "about", "blob", "file")
BAD_SCHEMES = ("data:", "javascript:", "mailto:", "tel:", "#")

CATEGORY_EXTENSIONS = {
    "css": (".css",),
    "js": (".js", ".mjs"),
    "image": (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".avif", ".ico", ".bmp"),
    "font": (".woff", ".woff2", ".ttf", ".eot", ".otf"),
    "video": (".mp4", ".webm", ".ogv", ".mov"),
    "audio": (".mp3", ".wav", ".ogg", ".m4a"),
}
CATEGORY_DIRS = {
    "css": "css",
    "js": "js",
    "image": "images",
    "font": "fonts",
    "video": "video",
    "audio": "audio",
    "other": "other",
}
FILENAME_EXTENSIONS = frozenset(
    [".html", ".htm", ".json"] + [ext for exts in CATEGORY_EXTENSIONS.values() for ext in exts]
)
_EXTENSION_CATEGORY = {ext: category for category, exts in CATEGORY_EXTENSIONS.items() for ext in exts}


def normalize(value: str) -> str:
    """Turn user input into an absolute http(s) URL or raise InvalidUrl."""
    url = (value or "").strip()
    if not url:
        raise InvalidUrl("URL is required")
    if any(ch.isspace() for ch in url):
        raise InvalidUrl("Invalid URL format")

    match = SCHEME_RE.match(url)
    if match is None:
        authority = url.split("/", 1)[0]
        prefix = authority.split(":", 1)[0].lower()
        host_port = authority.rpartition("@")[2]
        if ":" in authority and (prefix in OPAQUE_SCHEMES or ("@" not in authority and not HOST_PORT_RE.match(host_port))):
            # bare "scheme:payload" such as mailto: or javascript:
            raise InvalidUrl("Only HTTP/HTTPS URLs are supported")
        url = "https://" + url
    elif match.group(1).lower() not in ("http", "https"):
        raise InvalidUrl("Only HTTP/HTTPS URLs are supported")

    try:
        parsed = urlparse(url)
        _ = parsed.port
    except ValueError as exc:
        raise InvalidUrl("Invalid URL format") from exc
    if not parsed.hostname:
        raise InvalidUrl("Invalid URL format")

    return urlunparse(
        (
            parsed.scheme.lower(),
            _lower_host(parsed.netloc),
            parsed.path or "/",
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


def _lower_host(netloc: str) -> str:
    userinfo, at, host_port = netloc.rpartition("@")
    return f"{userinfo}{at}{host_port.lower()}"


def resolve(reference: str, base_url: str) -> Optional[str]:
    candidate = (reference or "").strip()
    if not candidate:
        return None
    if candidate.lower().startswith(BAD_SCHEMES):
        return None

    try:
        if candidate.startswith("//"):
            resolved = f"{urlparse(base_url).scheme}:{candidate}"
        else:
            resolved = urljoin(base_url, candidate)
        parsed = urlparse(resolved)
        _ = parsed.port
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return resolved


def extension(url: str) -> str:
    """Lowercased path extension, ignoring query and fragment."""
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    return posixpath.splitext(path)[1].lower()


def classify(url: str) -> str:
    return _EXTENSION_CATEGORY.get(extension(url), "other")


def category_dir(category: str) -> str:
    return CATEGORY_DIRS.get(category, "other")


def local_filename(url: str) -> str:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    ext = extension(url)
    if ext in FILENAME_EXTENSIONS:
        return f"{digest}{ext}"
    return digest


def safe_host(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if not host:
        return "unknown"
    return SAFE_HOST_RE.sub("_", host)


def output_folder_name(url: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{safe_host(url)}_{stamp}"
