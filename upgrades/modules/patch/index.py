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
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from upgrades.utils.index import log_message, compute_path_sha256
from upgrades.modules.strategy.manifest import PatchOperations, PatchRef, PackageRef
from .errors import (
    AtomicOperationFailed,
    IoFailure,
    RollbackFailed,
    PathError,
    PermissionFailure,
    UnsupportedOperation,
)
from .file_operations import OperationKind, PathOperation, operations_from_patch
from .processor import PatchProcessor

BACKUP_PREFIX = ".upgrade-backup-"
EXTRACT_PREFIX = ".upgrade-payload-"
DEFAULT_PRESERVED = ("data", "upload")

ProgressCallback = Callable[[float], None]


@dataclass
class BackupEntry:
    """Original state of one touched path, recorded before mutation."""
    relative_path: str
    was_absent: bool
    backup_path: Optional[Path] = None
    checksum: str = ""
    is_dir: bool = False


@dataclass
class PatchExecutionPlan:
    """
    Resolved operations for one apply call plus the backup manifest.

    The backup fields are filled in while applying and are only
    meaningful for the duration of that call.
    """
    managed_root: Path
    payload_root: Optional[Path]
    operations: List[PathOperation]
    backup_entries: List[BackupEntry] = field(default_factory=list)
    created_dirs: List[Path] = field(default_factory=list)

    @classmethod
    def from_patch_operations(cls, managed_root, payload_root, operations: PatchOperations) -> "PatchExecutionPlan":
        return cls(Path(managed_root), Path(payload_root) if payload_root else None,
                   operations_from_patch(operations))

    @classmethod
    def for_full_package(
        cls,
        managed_root,
        payload_root,
        preserve: Sequence[str] = DEFAULT_PRESERVED,
    ) -> "PatchExecutionPlan":
        """
        Replace every top-level entry the package ships and delete the
        top-level entries it no longer ships, leaving preserved names alone.
        """
        managed_root = Path(managed_root)
        payload_root = Path(payload_root)
        preserved = set(preserve)
        shipped = {entry.name: entry for entry in payload_root.iterdir()}

        deletes = []
        if managed_root.is_dir():
            for entry in sorted(managed_root.iterdir()):
                if entry.name in shipped or entry.name in preserved:
                    continue
                kind = OperationKind.DELETE_DIRECTORY if entry.is_dir() and not entry.is_symlink() else OperationKind.DELETE_FILE
                deletes.append(PathOperation(kind, entry.name))

        replaces = []
        for name in sorted(shipped):
            if name in preserved:
                continue
            entry = shipped[name]
            kind = OperationKind.REPLACE_DIRECTORY if entry.is_dir() else OperationKind.REPLACE_FILE
            replaces.append(PathOperation(kind, name))

        return cls(managed_root, payload_root, deletes + replaces)

    def summary(self) -> str:
        counts = {kind: 0 for kind in OperationKind}
        for op in self.operations:
            counts[op.kind] += 1
        return (
            f"{len(self.operations)} operation(s) "
            f"(replace files: {counts[OperationKind.REPLACE_FILE]}, "
            f"replace directories: {counts[OperationKind.REPLACE_DIRECTORY]}, "
            f"delete files: {counts[OperationKind.DELETE_FILE]}, "
            f"delete directories: {counts[OperationKind.DELETE_DIRECTORY]})"
        )


class PatchExecutor:
    """
    Applies a PatchExecutionPlan to the managed root all-or-nothing.

    Every touched path is moved into a staging backup before anything is
    written. On success the backup is discarded; on failure every path
    is restored and the restored content is checked against the checksum
    recorded before mutation.
    """

    def __init__(
        self,
        managed_root,
        backup_root=None,
        processor: Optional[PatchProcessor] = None,
    ):
        self.managed_root = Path(managed_root)
        self.backup_root = Path(backup_root) if backup_root else self.managed_root.parent
        self.processor = processor or PatchProcessor()

    def apply(self, plan: PatchExecutionPlan, progress: Optional[ProgressCallback] = None) -> None:
        """
        Apply plan. Returns only when the change is committed or fully
        rolled back.

        Raises:
            PathError, PermissionFailure, VerificationFailed: preflight
                failures, nothing was touched.
            AtomicOperationFailed: a mutation failed and was rolled back.
            RollbackFailed: restoring the backup failed.
        """
        self._preflight(plan)
        log_message(f"[PATCH] Applying {plan.summary()} to {plan.managed_root}")

        self.backup_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=BACKUP_PREFIX, dir=self.backup_root))
        plan.backup_entries = []
        plan.created_dirs = []

        try:
            self._backup(plan, staging)
            total = len(plan.operations) or 1
            for done, op in enumerate(plan.operations, start=1):
                self._ensure_parents(plan, op.target(plan.managed_root).parent)
                log_message(f"[PATCH] {op}", "DEBUG")
                try:
                    op.apply(plan.managed_root, plan.payload_root)
                except OSError as e:
                    raise IoFailure(f"{op} failed: {e}") from e
                if progress:
                    progress(done / total)
        except BaseException as e:
            log_message(f"[PATCH] ✗ Operation failed: {e!r}", "ERROR")
            log_message("[PATCH] Rolling back touched paths...", "WARNING")
            self._rollback(plan, staging, e)
            # Interrupts propagate unchanged once the root is restored
            if not isinstance(e, Exception):
                raise
            raise AtomicOperationFailed(f"Patch application failed and was rolled back: {e}", e) from e

        log_message(f"[PATCH] ✓ Applied {len(plan.operations)} operation(s)")
        self._discard_backup(staging)

    def apply_patch(
        self,
        patch_ref: PatchRef,
        archive_path,
        progress: Optional[ProgressCallback] = None,
    ) -> PatchExecutionPlan:
        """Verify, extract and apply a patch archive."""
        archive_path = Path(archive_path)
        self.processor.verify_integrity(archive_path, patch_ref.hash, patch_ref.signature)

        self.backup_root.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=EXTRACT_PREFIX, dir=self.backup_root))
        try:
            payload_root = self.processor.extract(archive_path, work)
            plan = PatchExecutionPlan.from_patch_operations(self.managed_root, payload_root, patch_ref.operations)
            self.apply(plan, progress)
            return plan
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def install_full_package(
        self,
        package_ref: PackageRef,
        archive_path,
        preserve: Sequence[str] = DEFAULT_PRESERVED,
        progress: Optional[ProgressCallback] = None,
    ) -> PatchExecutionPlan:
        """Verify, extract and install a full package over the managed root."""
        archive_path = Path(archive_path)
        self.processor.verify_integrity(archive_path, package_ref.hash, package_ref.signature)

        self.backup_root.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=EXTRACT_PREFIX, dir=self.backup_root))
        try:
            payload_root = _unwrap_single_directory(self.processor.extract(archive_path, work))
            if not self.managed_root.exists():
                self.managed_root.mkdir(parents=True)
            plan = PatchExecutionPlan.for_full_package(self.managed_root, payload_root, preserve)
            self.apply(plan, progress)
            return plan
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def operation_summary(self, operations: PatchOperations) -> str:
        return PatchExecutionPlan(self.managed_root, None, operations_from_patch(operations)).summary()

    def _preflight(self, plan: PatchExecutionPlan) -> None:
        root = plan.managed_root
        if not root.is_dir():
            raise PathError(f"Managed root does not exist: {root}")
        if not os.access(root, os.W_OK):
            raise PermissionFailure(f"Managed root is not writable: {root}")

        resolved_root = root.resolve()
        if _is_within(self.backup_root.resolve(), resolved_root):
            raise PathError(f"Backup location {self.backup_root} must be outside the managed root")

        for op in plan.operations:
            target = op.target(root)
            if not _is_within(target.resolve(), resolved_root) or target.resolve() == resolved_root:
                raise PathError(f"Operation target escapes managed root: {op.relative_path}")
            if not op.kind.is_replace and os.path.lexists(target):
                on_disk_dir = target.is_dir() and not target.is_symlink()
                if on_disk_dir != op.kind.is_directory:
                    found = "a directory" if on_disk_dir else "a file"
                    raise UnsupportedOperation(f"Cannot {op.kind.value} on {op.relative_path}: it is {found}")

        if any(op.kind.is_replace for op in plan.operations):
            if plan.payload_root is None:
                raise PathError("Plan has replace operations but no payload root")
            self.processor.validate_structure(plan.payload_root, plan.operations)

        if self.backup_root.exists() and not os.access(self.backup_root, os.W_OK):
            raise PermissionFailure(f"Backup location is not writable: {self.backup_root}")

    def _backup(self, plan: PatchExecutionPlan, staging: Path) -> None:
        covered: List[str] = []
        for rel in sorted({op.relative_path for op in plan.operations}, key=lambda p: (p.count("/"), p)):
            if any(rel.startswith(parent + "/") for parent in covered):
                continue
            target = plan.managed_root / rel
            if not os.path.lexists(target):
                plan.backup_entries.append(BackupEntry(relative_path=rel, was_absent=True))
                continue

            is_dir = target.is_dir() and not target.is_symlink()
            checksum = compute_path_sha256(target)
            backup_path = staging / rel
            backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(target), str(backup_path))
            plan.backup_entries.append(BackupEntry(
                relative_path=rel,
                was_absent=False,
                backup_path=backup_path,
                checksum=checksum,
                is_dir=is_dir,
            ))
            covered.append(rel)
        log_message(f"[PATCH] Backed up {len(covered)} path(s) to {staging}")

    def _ensure_parents(self, plan: PatchExecutionPlan, directory: Path) -> None:
        missing = []
        current = directory
        while not current.exists() and current != plan.managed_root:
            missing.append(current)
            current = current.parent
        for path in reversed(missing):
            path.mkdir()
            plan.created_dirs.append(path)

    def _rollback(self, plan: PatchExecutionPlan, staging: Path, cause: BaseException) -> None:
        failed = []
        for entry in reversed(plan.backup_entries):
            target = plan.managed_root / entry.relative_path
            try:
                if os.path.lexists(target):
                    if target.is_dir() and not target.is_symlink():
                        shutil.rmtree(target)
                    else:
                        target.unlink()
                if not entry.was_absent:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(entry.backup_path), str(target))
            except OSError as e:
                log_message(f"[PATCH] ✗ Failed to restore {entry.relative_path}: {e}", "ERROR")
                failed.append(entry.relative_path)

        for directory in sorted(plan.created_dirs, key=lambda p: len(p.parts), reverse=True):
            try:
                if directory.is_dir() and not any(directory.iterdir()):
                    directory.rmdir()
            except OSError as e:
                log_message(f"[PATCH] Could not remove created directory {directory}: {e}", "WARNING")

        for entry in plan.backup_entries:
            if entry.was_absent or entry.relative_path in failed:
                continue
            restored = compute_path_sha256(plan.managed_root / entry.relative_path)
            if restored != entry.checksum:
                log_message(f"[PATCH] ✗ Checksum mismatch after restoring {entry.relative_path}", "ERROR")
                failed.append(entry.relative_path)

        if failed:
            raise RollbackFailed(failed, staging, cause) from cause

        log_message(f"[PATCH] ✓ Rolled back {len(plan.backup_entries)} path(s)")
        self._discard_backup(staging)

    def _discard_backup(self, staging: Path) -> None:
        try:
            shutil.rmtree(staging)
        except OSError as e:
            log_message(f"[PATCH] Failed to remove backup {staging}: {e}", "WARNING")


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _unwrap_single_directory(root: Path) -> Path:
    entries = list(root.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return root
