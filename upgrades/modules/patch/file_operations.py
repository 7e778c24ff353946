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
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List

from upgrades.modules.strategy.manifest import PatchOperations


class OperationKind(Enum):
    REPLACE_FILE = "replace_file"
    REPLACE_DIRECTORY = "replace_directory"
    DELETE_FILE = "delete_file"
    DELETE_DIRECTORY = "delete_directory"

    @property
    def is_replace(self) -> bool:
        return self in (OperationKind.REPLACE_FILE, OperationKind.REPLACE_DIRECTORY)

    @property
    def is_directory(self) -> bool:
        return self in (OperationKind.REPLACE_DIRECTORY, OperationKind.DELETE_DIRECTORY)


@dataclass(frozen=True)
class PathOperation:
    """One path-level change relative to the managed root."""
    kind: OperationKind
    relative_path: str

    def target(self, managed_root: Path) -> Path:
        return Path(managed_root) / self.relative_path

    def source(self, payload_root: Path) -> Path:
        return Path(payload_root) / self.relative_path

    def apply(self, managed_root: Path, payload_root: Path) -> None:
        """Perform the change; the target has already been moved aside."""
        target = self.target(managed_root)
        if self.kind is OperationKind.REPLACE_FILE:
            atomic_file_replace(self.source(payload_root), target)
        elif self.kind is OperationKind.REPLACE_DIRECTORY:
            if os.path.lexists(target):
                remove_path(target)
            shutil.copytree(self.source(payload_root), target, symlinks=True)
        elif os.path.lexists(target):
            remove_path(target)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.relative_path}"


def operations_from_patch(operations: PatchOperations) -> List[PathOperation]:
    """Deletes first, then replaces, each group in path order."""
    result = []
    result.extend(PathOperation(OperationKind.DELETE_FILE, p) for p in sorted(operations.delete.files))
    result.extend(PathOperation(OperationKind.DELETE_DIRECTORY, p) for p in sorted(operations.delete.directories))
    result.extend(PathOperation(OperationKind.REPLACE_FILE, p) for p in sorted(operations.replace.files))
    result.extend(PathOperation(OperationKind.REPLACE_DIRECTORY, p) for p in sorted(operations.replace.directories))
    return result


def atomic_file_replace(source: Path, target: Path) -> None:
    """
    Copy source over target through a temporary file in the target's
    directory, so readers see either the old or the new content.
    """
    target_dir = target.parent
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target_dir)
    try:
        with os.fdopen(fd, "wb") as tmp, open(source, "rb") as src:
            shutil.copyfileobj(src, tmp)
            tmp.flush()
            os.fsync(tmp.fileno())
        shutil.copystat(source, tmp_name)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def remove_path(path: Path) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)
