from __future__ import annotations

import logging
import posixpath
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import HTTPError as Urllib3Error
from urllib3.exceptions import ReadTimeoutError
from urllib3.util.retry import Retry

from discovery import CSS_URL_RE
from errors import FetchFailure, WriteFailure
from urls import category_dir, classify, local_filename, resolve


logger = logging.getLogger("page_cloner")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

CHUNK_SIZE = 64 * 1024

Emit = Callable[..., None]


@dataclass
class AssetRecord:
    source_url: str
    local_path: str
    category: str
    size: int = 0


class AssetStore:
    """URL -> local file mapping for a single clone.

    ``local_path`` values are relative to the clone folder, e.g.
    ``assets/images/0a1b2c3d4e5f.png``.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)
        self.assets_dir = self.output_dir / "assets"
        self._records: Dict[str, AssetRecord] = {}
        self._lock = threading.Lock()

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, url: str) -> Optional[AssetRecord]:
        with self._lock:
            return self._records.get(url)

    def records(self) -> List[AssetRecord]:
        with self._lock:
            return list(self._records.values())

    def as_map(self) -> Dict[str, str]:
        with self._lock:
            return {url: record.local_path for url, record in self._records.items()}

    def stylesheets(self) -> List[AssetRecord]:
        return [record for record in self.records() if record.category == "css"]

    def plan(self, url: str) -> Tuple[str, str]:
        category = classify(url)
        local_rel = f"assets/{category_dir(category)}/{local_filename(url)}"
        return category, local_rel

    def absolute_path(self, local_rel: str) -> Path:
        return self.output_dir / local_rel

    def save(self, url: str, body: bytes) -> AssetRecord:
        category, local_rel = self.plan(url)
        local_abs = self.absolute_path(local_rel)
        try:
            local_abs.parent.mkdir(parents=True, exist_ok=True)
            local_abs.write_bytes(body)
        except OSError as exc:
            raise WriteFailure(f"Could not write {local_abs}: {exc}") from exc

        record = AssetRecord(source_url=url, local_path=local_rel, category=category, size=len(body))
        with self._lock:
            self._records[url] = record
        return record


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    # no retries at any level; redirects are still followed
    retry = Retry(total=None, connect=0, read=0, status=0, other=0, redirect=10, allowed_methods=("GET",))
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = user_agent
    return session


class AssetFetcher:
    def __init__(
        self,
        timeout: float = 10.0,
        max_workers: int = 6,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self.session = session or build_session()

    def fetch(self, url: str) -> bytes:
        """GET ``url``; the whole download must finish within ``self.timeout`` seconds."""
        logger.debug("GET %s", url)
        deadline = time.monotonic() + self.timeout
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                if not response.ok:
                    raise FetchFailure(url, f"Failed to download ({response.status_code})")
                return self._read_body(url, response, deadline)
        except (requests.Timeout, ReadTimeoutError) as exc:
            raise FetchFailure(url, "Timed out") from exc
        except (requests.RequestException, Urllib3Error) as exc:
            raise FetchFailure(url, str(exc) or exc.__class__.__name__) from exc

    def _read_body(self, url: str, response: requests.Response, deadline: float) -> bytes:
        chunks: List[bytes] = []
        while True:
            if time.monotonic() >= deadline:
                raise FetchFailure(url, "Timed out")
            # read1 returns whatever has arrived instead of waiting for a full chunk
            chunk = response.raw.read1(CHUNK_SIZE, decode_content=True)
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)

    def fetch_all(self, urls: Iterable[str], store: AssetStore, emit: Optional[Emit] = None) -> Dict[str, AssetRecord]:
        """Download every URL not yet in ``store``; failures are reported and skipped."""
        pending = [url for url in dict.fromkeys(urls) if url not in store]
        fetched: Dict[str, AssetRecord] = {}
        if not pending:
            return fetched

        def _one(url: str) -> Optional[AssetRecord]:
            try:
                body = self.fetch(url)
            except FetchFailure as exc:
                _emit(emit, "warning", f"Error downloading asset: {exc}")
                return None
            return store.save(url, body)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending))) as pool:
            future_map = {pool.submit(_one, url): url for url in pending}
            for fut in as_completed(future_map):
                record = fut.result()
                if record is None:
                    continue
                fetched[record.source_url] = record
                filename = posixpath.basename(record.local_path)
                _emit(emit, "pipeline", f"Downloaded: {filename} ({record.size} bytes)")
        return fetched


def _emit(emit: Optional[Emit], kind: str, message: str) -> None:
    if emit is None:
        return
    emit(kind, message)


def decode_text(body: bytes) -> Tuple[str, str]:
    """Decode stylesheet bytes, returning the text and the encoding that worked."""
    try:
        return body.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return body.decode("latin-1"), "latin-1"


def relative_link(from_local: str, to_local: str) -> str:
    return posixpath.relpath(to_local, posixpath.dirname(from_local) or ".")


def expand_stylesheet(
    record: AssetRecord,
    store: AssetStore,
    fetcher: AssetFetcher,
    emit: Optional[Emit] = None,
) -> int:
    """Pull in the url(...) references of one downloaded stylesheet and rewrite them.

    References resolve against the stylesheet's remote URL. Stylesheets fetched
    here are stored but not expanded themselves. Returns the number of
    rewritten occurrences.
    """
    css_path = store.absolute_path(record.local_path)
    try:
        text, encoding = decode_text(css_path.read_bytes())
    except OSError as exc:
        raise WriteFailure(f"Could not read {css_path}: {exc}") from exc

    targets: Dict[str, str] = {}
    for match in CSS_URL_RE.finditer(text):
        raw = match.group(2).strip()
        if not raw or raw.lower().startswith("data:"):
            continue
        resolved = resolve(raw, record.source_url)
        if resolved:
            targets[match.group(0)] = resolved

    if not targets:
        return 0

    missing = [url for url in dict.fromkeys(targets.values()) if url not in store]
    if missing:
        for fetched in fetcher.fetch_all(missing, store).values():
            _emit(emit, "pipeline", f"Downloaded CSS resource: {posixpath.basename(fetched.local_path)}")
        for url in missing:
            if url not in store:
                _emit(emit, "warning", f"Failed to download CSS resource: {url[:80]}")

    rewritten = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal rewritten
        resolved = targets.get(match.group(0))
        target = store.get(resolved) if resolved else None
        if target is None:
            return match.group(0)
        rewritten += 1
        return f"url('{relative_link(record.local_path, target.local_path)}')"

    updated = CSS_URL_RE.sub(_replace, text)
    if updated != text:
        try:
            css_path.write_bytes(updated.encode(encoding))
        except OSError as exc:
            raise WriteFailure(f"Could not write {css_path}: {exc}") from exc
    return rewritten


def expand_stylesheets(store: AssetStore, fetcher: AssetFetcher, emit: Optional[Emit] = None) -> int:
    total = 0
    for record in store.stylesheets():
        total += expand_stylesheet(record, store, fetcher, emit)
    return total
