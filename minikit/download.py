"""Artifact downloads (ISO images, binaries) for minikit."""

from __future__ import annotations

import posixpath
import tempfile
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from minikit import __version__
from minikit.exceptions import ManagerError
from minikit.utils import ensure_directory, log

CHUNK_SIZE = 1024 * 256  # 256 KiB


def download_file(url: str, destination: Path, label: str = "Downloading", show_progress: bool = True) -> None:
    """Download a file through a temporary sibling, then move it into place."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": f"minikit/{__version__}"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                if show_progress:
                    _print_progress(downloaded, total_bytes, time.time() - start_time)
            if show_progress:
                print(flush=True)
            tmp.flush()
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {destination.name} ({downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s)")


def _print_progress(downloaded: int, total_bytes, elapsed: float) -> None:
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        total_mb = total_bytes / (1024 * 1024)
        pct = downloaded * 100 / total_bytes
        bar_len = 30
        filled = int(bar_len * downloaded / total_bytes)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB ({speed / (1024 * 1024):.1f} MiB/s)",
            end="",
            flush=True,
        )
    else:
        print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)", end="", flush=True)


def cache_path(url: str, dest_dir: Path) -> Path:
    name = posixpath.basename(urlparse(url).path)
    if not name:
        raise ManagerError(f"Cannot derive a file name from URL {url}")
    return dest_dir / name


def cache_file(url: str, dest_dir: Path, show_progress: bool = True) -> Path:
    """Download ``url`` into ``dest_dir`` unless it is already cached."""
    destination = cache_path(url, dest_dir)
    if destination.exists():
        log("DEBUG", f"{destination} already cached")
        return destination
    download_file(url, destination, show_progress=show_progress)
    return destination


def cache_binaries(urls: Sequence[str], dest_dir: Path, max_workers: int = 4) -> Dict[str, Path]:
    """Fetch several files concurrently; wait for all, fail on the first error.

    When one download fails, downloads that have not started yet are
    cancelled, the ones already running are waited for, and the first error
    is re-raised.
    """
    ensure_directory(dest_dir)
    results: Dict[str, Path] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {pool.submit(cache_file, url, dest_dir, False): url for url in urls}
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in pending:
            future.cancel()
        wait(pending)
        for future in done:
            exc = future.exception()
            if exc is not None:
                raise exc
            results[futures[future]] = future.result()
        for future in pending:
            if not future.cancelled():
                exc = future.exception()
                if exc is not None:
                    raise exc
                results[futures[future]] = future.result()
    return results
