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

"""
Error taxonomy for patch and package application.

Every failure carries two classifications the caller acts on:
is_recoverable() tells whether retrying the upgrade (or falling back to a
full upgrade) can succeed, requires_rollback() tells whether the managed
root may have been mutated when the error was raised.
"""

from typing import Iterable, Optional


class PatchExecutorError(Exception):
    """Custom exception for patch application failures."""

    recoverable = True
    rollback_required = True

    def is_recoverable(self) -> bool:
        return self.recoverable

    def requires_rollback(self) -> bool:
        return self.rollback_required


class IoFailure(PatchExecutorError):
    """Filesystem error while mutating the managed root."""
    pass


class DownloadFailed(PatchExecutorError):
    rollback_required = False


class ExtractionFailed(PatchExecutorError):
    """Archive could not be unpacked into the staging directory."""
    rollback_required = False


class AtomicOperationFailed(PatchExecutorError):
    """A mutation failed and every touched path was restored."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PathError(PatchExecutorError):
    recoverable = False
    rollback_required = False


class PermissionFailure(PatchExecutorError):
    recoverable = False
    rollback_required = False


class VerificationFailed(PatchExecutorError):
    recoverable = False
    rollback_required = False


class HashMismatch(VerificationFailed):
    def __init__(self, expected: str, actual: str):
        super().__init__(f"Hash mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class SignatureVerificationFailed(VerificationFailed):
    pass


class UnsupportedOperation(PatchExecutorError):
    recoverable = False
    rollback_required = False


class RollbackFailed(PatchExecutorError):
    """Restoring the backup failed; manual intervention is needed."""

    recoverable = False

    def __init__(self, paths: Iterable[str], backup_location: str, cause: Optional[BaseException] = None):
        self.paths = list(paths)
        self.backup_location = str(backup_location)
        self.cause = cause
        super().__init__(
            f"Rollback failed for {len(self.paths)} path(s): {', '.join(self.paths)}; "
            f"backup kept at {self.backup_location}"
        )
