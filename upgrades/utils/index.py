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
import json
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("upgrades")

HASH_CHUNK_SIZE = 4096


def log_message(message: str, level: str = "INFO"):
    """Unified logger used throughout the upgrade components."""
    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "DEBUG":
        logger.debug(message)
    else:
        logger.info(message)


def load_index(index_path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """
    Load an index.json file containing metadata and configuration.

    Args:
        index_path: Path to the index.json file, or to the directory holding it

    Returns:
        dict: The loaded data, or None if not found/invalid
    """
    path = Path(index_path)
    if path.is_dir():
        path = path / "index.json"

    if not path.exists():
        log_message(f"Index file does not exist: {path}", "DEBUG")
        return None

    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        log_message(f"Failed to load {path}: {e}", "ERROR")
        return None


def get_schema_version(index_path: Union[str, Path]) -> str:
    """Return metadata.schema_version from an index.json, or "unknown"."""
    data = load_index(index_path)
    if not data:
        return "unknown"
    return data.get("metadata", {}).get("schema_version", "unknown")


def compute_file_sha256(file_path: Union[str, Path]) -> str:
    """Calculate the SHA-256 hex digest of a single file."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def compute_folder_sha256(folder_path: Union[str, Path]) -> str:
    """
    Calculate a SHA-256 checksum over a directory tree.

    Relative paths are folded into the digest so that renames change the
    checksum; directories and files are walked in sorted order.
    """
    sha256_hash = hashlib.sha256()
    for root, dirs, files in os.walk(folder_path):
        dirs.sort()
        files.sort()
        for name in files:
            full_path = os.path.join(root, name)
            rel_path = os.path.relpath(full_path, folder_path)
            sha256_hash.update(rel_path.replace(os.sep, "/").encode())
            if os.path.islink(full_path):
                sha256_hash.update(os.readlink(full_path).encode())
                continue
            with open(full_path, 'rb') as f:
                for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                    sha256_hash.update(chunk)
        for name in dirs:
            # empty directories still count
            rel_path = os.path.relpath(os.path.join(root, name), folder_path)
            sha256_hash.update((rel_path.replace(os.sep, "/") + "/").encode())
    return sha256_hash.hexdigest()


def compute_path_sha256(path: Union[str, Path]) -> str:
    """Checksum a file or a directory; empty string when the path is absent."""
    if not os.path.lexists(path):
        return ""
    if os.path.isdir(path) and not os.path.islink(path):
        return compute_folder_sha256(path)
    if os.path.islink(path):
        return hashlib.sha256(os.readlink(path).encode()).hexdigest()
    return compute_file_sha256(path)
