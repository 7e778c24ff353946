from __future__ import annotations

import json
from pathlib import Path

from upgrades.utils.index import compute_file_sha256


def write_json(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))
    return path


def snapshot_tree(root: Path) -> dict:
    """Relative path -> sha256 for every file under root."""
    return {
        str(p.relative_to(root)): compute_file_sha256(p)
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }
