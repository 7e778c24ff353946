"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urlparse

import requests

from upgrades.utils.index import log_message, compute_file_sha256
from upgrades.modules.patch.errors import DownloadFailed

DEFAULT_TIMEOUT = 60 * 60
CONNECT_TIMEOUT = 30
STREAM_CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int, Optional[int]], None]


@dataclass
class DownloadResult:
    """A downloaded artifact and the SHA-256 of its bytes."""
    path: Path
    sha256: str
    size: int
    reused: bool = False


def _normalise_hash(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    return value or None


def filename_from_url(url: str, default: str = "package.tar.gz") -> str:
    name = os.path.basename(urlparse(url).path)
    return name or default


def download_file(
    url: str,
    destination_dir: Union[str, Path],
    expected_hash: Optional[str] = None,
    filename: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    progress: Optional[ProgressCallback] = None,
    session: Optional[requests.Session] = None,
) -> DownloadResult:
    """
    Fetch an artifact into destination_dir.

    Absolute local paths are copied instead of fetched. When a file with
    the expected hash is already present it is reused, and an interrupted
    transfer left as "<name>.part" is resumed with a Range request.

    Raises:
        DownloadFailed: on any transport or filesystem failure.
    """
    destination_dir = Path(destination_dir)
    target = destination_dir / (filename or filename_from_url(url))
    expected = _normalise_hash(expected_hash)

    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DownloadFailed(f"Cannot create download directory {destination_dir}: {e}") from e

    if expected and target.is_file():
        existing = compute_file_sha256(target)
        if existing == expected:
            log_message(f"[DOWNLOAD] Reusing verified file: {target}")
            return DownloadResult(target, existing, target.stat().st_size, reused=True)
        log_message(f"[DOWNLOAD] Existing file hash differs, downloading again: {target}", "WARNING")

    if url.startswith("/"):
        return _copy_local(Path(url), target)

    if session is not None:
        return _download_http(url, target, timeout, progress, session)
    with requests.Session() as http:
        return _download_http(url, target, timeout, progress, http)


def _copy_local(source: Path, target: Path) -> DownloadResult:
    log_message(f"[DOWNLOAD] Copying local package: {source}")
    if not source.is_file():
        raise DownloadFailed(f"Local package not found: {source}")
    try:
        if source.resolve() != target.resolve():
            shutil.copy2(source, target)
    except OSError as e:
        raise DownloadFailed(f"Failed to copy {source} to {target}: {e}") from e
    return DownloadResult(target, compute_file_sha256(target), target.stat().st_size)


def _download_http(
    url: str,
    target: Path,
    timeout: int,
    progress: Optional[ProgressCallback],
    http: requests.Session,
) -> DownloadResult:
    partial = target.with_name(target.name + ".part")
    offset = partial.stat().st_size if partial.exists() else 0
    headers = {"Range": f"bytes={offset}-"} if offset else {}

    log_message(f"[DOWNLOAD] Fetching {url}" + (f" (resuming at {offset} bytes)" if offset else ""))

    try:
        with http.get(url, stream=True, headers=headers, timeout=(CONNECT_TIMEOUT, timeout)) as response:
            if offset and response.status_code == 416:
                # the part file is already complete
                log_message("[DOWNLOAD] Server reports range satisfied, finalising partial file")
            else:
                response.raise_for_status()
                if offset and response.status_code != 206:
                    log_message("[DOWNLOAD] Server ignored range request, restarting download", "WARNING")
                    offset = 0

                total = response.headers.get("Content-Length")
                total = int(total) + offset if total and total.isdigit() else None

                mode = "ab" if offset else "wb"
                received = offset
                with open(partial, mode) as f:
                    for chunk in response.iter_content(chunk_size=STREAM_CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        received += len(chunk)
                        if progress:
                            progress(received, total)
    except requests.RequestException as e:
        raise DownloadFailed(f"Download of {url} failed: {e}") from e
    except OSError as e:
        raise DownloadFailed(f"Failed writing {partial}: {e}") from e

    try:
        os.replace(partial, target)
    except OSError as e:
        raise DownloadFailed(f"Failed to finalise {target}: {e}") from e

    digest = compute_file_sha256(target)
    size = target.stat().st_size
    log_message(f"[DOWNLOAD] ✓ Downloaded {target.name} ({size} bytes, sha256 {digest[:12]}...)")
    return DownloadResult(target, digest, size)

