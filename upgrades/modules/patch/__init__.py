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
Patch Module - Atomic Package Application

Applies verified patch and full packages to the managed root with
all-or-nothing semantics: every touched path is backed up before the
first write and restored if any operation fails.

Components:
- PatchExecutor: preflight, backup, apply, commit or rollback
- PatchExecutionPlan: resolved path operations plus the backup manifest
- PatchProcessor: hash/signature verification and safe extraction
- errors: PatchExecutorError taxonomy with recoverability classification
"""

from .errors import (
    PatchExecutorError,
    IoFailure,
    DownloadFailed,
    ExtractionFailed,
    AtomicOperationFailed,
    PathError,
    PermissionFailure,
    VerificationFailed,
    HashMismatch,
    SignatureVerificationFailed,
    UnsupportedOperation,
    RollbackFailed,
)
from .file_operations import OperationKind, PathOperation, operations_from_patch
from .processor import PatchProcessor, SignatureVerifier
from .index import PatchExecutor, PatchExecutionPlan, BackupEntry

__all__ = [
    'PatchExecutor',
    'PatchExecutionPlan',
    'BackupEntry',
    'PatchProcessor',
    'SignatureVerifier',
    'OperationKind',
    'PathOperation',
    'operations_from_patch',
    'PatchExecutorError',
    'IoFailure',
    'DownloadFailed',
    'ExtractionFailed',
    'AtomicOperationFailed',
    'PathError',
    'PermissionFailure',
    'VerificationFailed',
    'HashMismatch',
    'SignatureVerificationFailed',
    'UnsupportedOperation',
    'RollbackFailed',
]

__version__ = "1.0.0"
