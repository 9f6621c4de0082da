from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from assets import DEFAULT_USER_AGENT, AssetFetcher, AssetStore, expand_stylesheets
from discovery import discover_html, parse_html
from errors import CloneError, WriteFailure
from renderer import PlaywrightRenderer, Snapshot
from rewriter import rewrite_document
from urls import normalize, output_folder_name


logger = logging.getLogger("page_cloner")

EVENT_LOG_LEVELS = {
    "pipeline": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "network": logging.DEBUG,
    "console": logging.DEBUG,
}


@dataclass
class CloneConfig:
    output_root: Path = Path("output")
    headless: bool = True
    navigation_timeout: float = 60.0
    asset_timeout: float = 10.0
    max_workers: int = 6
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1366, "height": 768})
    user_agent: str = DEFAULT_USER_AGENT
    settle_seconds: float = 2.0
    scroll_pause: float = 0.5
    max_scroll_iterations: int = 20
    idle_timeout: float = 5.0


@dataclass
class CloneResult:
    success: bool
    output_path: Optional[str] = None
    open_url: Optional[str] = None
    folder_name: Optional[str] = None
    error: Optional[str] = None
    assets_downloaded: int = 0
    seconds: float = 0.0


class WebsiteCloner:
    def __init__(
        self,
        config: Optional[CloneConfig] = None,
        renderer=None,
        fetcher: Optional[AssetFetcher] = None,
        emit: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config or CloneConfig()
        self.renderer = renderer or PlaywrightRenderer(
            headless=self.config.headless,
            navigation_timeout=self.config.navigation_timeout,
            viewport=self.config.viewport,
            user_agent=self.config.user_agent,
            settle_seconds=self.config.settle_seconds,
            scroll_pause=self.config.scroll_pause,
            max_scroll_iterations=self.config.max_scroll_iterations,
            idle_timeout=self.config.idle_timeout,
        )
        self.fetcher = fetcher or AssetFetcher(
            timeout=self.config.asset_timeout,
            max_workers=self.config.max_workers,
        )
        self._emit = emit

    def log(self, kind: str, message: str) -> None:
        logger.log(EVENT_LOG_LEVELS.get(kind, logging.INFO), "[%s] %s", kind, message)
        if self._emit is not None:
            self._emit(kind, message)

    def clone(self, target_url: str) -> CloneResult:
        started = time.time()
        try:
            url = normalize(target_url)
        except CloneError as exc:
            self.log("error", f"Invalid URL: {exc}")
            return CloneResult(success=False, error=str(exc))

        self.log("pipeline", f"Starting clone of: {url}")
        try:
            output_dir = self._create_output_dir(url)
            snapshot: Snapshot = self.renderer.render(url, self.log)

            self.log("pipeline", "Parsing HTML and collecting assets...")
            soup = parse_html(snapshot.html)
            discovered = sorted(discover_html(soup, snapshot.final_url))
            self.log("pipeline", f"Found {len(discovered)} assets to download")

            store = AssetStore(output_dir)
            self.log("pipeline", "Downloading assets...")
            self.fetcher.fetch_all(discovered, store, self.log)

            self.log("pipeline", "Processing CSS files for font references...")
            expand_stylesheets(store, self.fetcher, self.log)

            self.log("pipeline", "Rewriting HTML references...")
            rewritten = rewrite_document(snapshot.html, store.as_map(), snapshot.final_url)

            self.log("pipeline", "Saving output...")
            seconds = round(time.time() - started, 2)
            self._write_output(output_dir, rewritten)
            self._write_manifest(output_dir, url, snapshot.final_url, store, seconds)
        except CloneError as exc:
            self.log("error", f"Clone failed: {exc}")
            return CloneResult(success=False, error=str(exc), seconds=round(time.time() - started, 2))

        open_url = f"/clone/{output_dir.name}/index.html"
        self.log("pipeline", f"Clone complete! Output: {output_dir}")
        self.log("pipeline", f"Open URL: {open_url}")
        return CloneResult(
            success=True,
            output_path=str(output_dir),
            open_url=open_url,
            folder_name=output_dir.name,
            assets_downloaded=len(store),
            seconds=seconds,
        )

    def _create_output_dir(self, url: str) -> Path:
        root = Path(self.config.output_root)
        base_name = output_folder_name(url)
        try:
            root.mkdir(parents=True, exist_ok=True)
            suffix = 1
            while True:
                name = base_name if suffix == 1 else f"{base_name}-{suffix}"
                candidate = root / name
                try:
                    candidate.mkdir()
                except FileExistsError:
                    suffix += 1
                    continue
                (candidate / "assets").mkdir(exist_ok=True)
                return candidate
        except OSError as exc:
            raise WriteFailure(f"Could not create output folder: {exc}") from exc

    def _write_output(self, output_dir: Path, html: str) -> None:
        index_path = output_dir / "index.html"
        try:
            index_path.write_text(html, encoding="utf-8")
        except OSError as exc:
            raise WriteFailure(f"Could not write {index_path}: {exc}") from exc

    def _write_manifest(self, output_dir: Path, url: str, final_url: str, store: AssetStore, seconds: float) -> None:
        files: List[Dict[str, object]] = [
            {
                "url": record.source_url,
                "local_path": record.local_path,
                "category": record.category,
                "bytes": record.size,
            }
            for record in store.records()
        ]
        payload = {
            "source_url": url,
            "final_url": final_url,
            "cloned_at": datetime.now(timezone.utc).isoformat(),
            "seconds": seconds,
            "assets_downloaded": len(files),
            "files": files,
        }
        manifest_path = output_dir / "manifest.json"
        try:
            manifest_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise WriteFailure(f"Could not write {manifest_path}: {exc}") from exc
