from __future__ import annotations

import io
import sys
import tarfile
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)

    tests_str = str(root / "tests")
    if tests_str not in sys.path:
        sys.path.insert(1, tests_str)


_ensure_project_root_on_path()

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture
def managed_root(tmp_path: Path) -> Path:
    """A small deployed stack: config, binaries, compose file and user data."""
    root = tmp_path / "stack" / "app"
    (root / "config").mkdir(parents=True)
    (root / "config" / "app.conf").write_text("mode=old\n")
    (root / "config" / "init_mysql.sql").write_text(
        "CREATE TABLE users (id INT NOT NULL AUTO_INCREMENT, username VARCHAR(64) NOT NULL, PRIMARY KEY (id));\n"
    )
    (root / "bin").mkdir()
    (root / "bin" / "server").write_text("old server\n")
    (root / "bin" / "helper").write_text("old helper\n")
    (root / "data").mkdir()
    (root / "data" / "db.bin").write_text("precious\n")
    (root / "docker-compose.yml").write_text("services: {}\n")
    return root


@pytest.fixture
def make_archive(tmp_path: Path) -> Callable[..., Path]:
    """Build a .tar.gz from a {relative path: text} mapping."""

    def _make(name: str, files: Dict[str, str], directory: Optional[Path] = None) -> Path:
        target_dir = directory or tmp_path / "archives"
        target_dir.mkdir(parents=True, exist_ok=True)
        archive = target_dir / name
        with tarfile.open(archive, "w:gz") as tar:
            for rel, content in files.items():
                data = content.encode()
                info = tarfile.TarInfo(rel)
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        return archive

    return _make


@pytest.fixture
def manifest_data() -> Callable[..., dict]:
    """Factory for release manifest dictionaries as served by the update API."""

    def _make(version: str = "1.0.1", patch: Optional[dict] = None, **overrides) -> dict:
        data = {
            "version": version,
            "release_date": "2025-01-15T10:00:00Z",
            "release_notes": "Maintenance release",
            "packages": {
                "full": {
                    "url": "https://releases.example.com/stack-full.tar.gz",
                    "hash": "sha256:" + "a" * 64,
                    "signature": "",
                }
            },
            "platforms": {
                "x86_64": {"url": "https://releases.example.com/stack-x86_64.tar.gz", "hash": "b" * 64},
                "aarch64": {"url": "https://releases.example.com/stack-aarch64.tar.gz", "hash": "c" * 64},
            },
        }
        if patch is not None:
            data["patch"] = patch
        data.update(overrides)
        return data

    return _make

