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
Archive verification and extraction for downloaded packages.

Nothing in here touches the managed root: packages are hashed, their
signatures checked and their contents unpacked into a staging
directory that the executor later reads from.
"""

import os
import base64
import binascii
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from upgrades.utils.index import log_message, compute_file_sha256
from .errors import (
    ExtractionFailed,
    HashMismatch,
    SignatureVerificationFailed,
    VerificationFailed,
)


def normalise_hash(value: str) -> str:
    value = value.strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    return value


class SignatureVerifier:
    """Verifies detached base64 signatures over package bytes with a PEM public key."""

    def __init__(self, public_key_pem: bytes):
        try:
            self.public_key = serialization.load_pem_public_key(public_key_pem)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise VerificationFailed(f"Unusable signing public key: {e}") from e

    @classmethod
    def from_file(cls, key_path: Union[str, Path]) -> "SignatureVerifier":
        try:
            with open(key_path, "rb") as f:
                return cls(f.read())
        except OSError as e:
            raise VerificationFailed(f"Cannot read public key {key_path}: {e}") from e

    def verify(self, data: bytes, signature: bytes) -> None:
        key = self.public_key
        try:
            if isinstance(key, ed25519.Ed25519PublicKey):
                key.verify(signature, data)
            elif isinstance(key, rsa.RSAPublicKey):
                key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
            elif isinstance(key, ec.EllipticCurvePublicKey):
                key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
            else:
                raise SignatureVerificationFailed(
                    f"Unsupported public key type: {type(key).__name__}"
                )
        except InvalidSignature as e:
            raise SignatureVerificationFailed("Signature does not match package contents") from e


def decode_signature(signature: str) -> bytes:
    try:
        return base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureVerificationFailed(f"Signature is not valid base64: {e}") from e


class PatchProcessor:
    """Hash and signature checks plus safe archive extraction."""

    def __init__(self, verifier: Optional[SignatureVerifier] = None):
        self.verifier = verifier

    @classmethod
    def with_public_key(cls, key_path: Optional[Union[str, Path]]) -> "PatchProcessor":
        if not key_path:
            return cls()
        return cls(SignatureVerifier.from_file(key_path))

    def verify_hash(self, archive_path: Path, expected_hash: Optional[str]) -> str:
        """Return the archive's SHA-256, raising HashMismatch when it differs from expected."""
        actual = compute_file_sha256(archive_path)
        if not expected_hash or expected_hash == "external":
            log_message(f"[PATCH] No declared hash for {archive_path.name}, hash check skipped", "WARNING")
            return actual

        expected = normalise_hash(expected_hash)
        if actual != expected:
            log_message(f"[PATCH] ✗ Hash mismatch for {archive_path.name}", "ERROR")
            raise HashMismatch(expected, actual)
        log_message(f"[PATCH] ✓ Hash verified: {actual[:16]}...")
        return actual

    def verify_signature(self, archive_path: Path, signature: Optional[str]) -> None:
        if not signature:
            log_message(f"[PATCH] No signature for {archive_path.name}, signature check skipped", "WARNING")
            return

        raw = decode_signature(signature)
        if self.verifier is None:
            log_message("[PATCH] No public key configured, signature checked for encoding only", "WARNING")
            return

        with open(archive_path, "rb") as f:
            data = f.read()
        self.verifier.verify(data, raw)
        log_message("[PATCH] ✓ Signature verified")

    def verify_integrity(self, archive_path: Path, expected_hash: Optional[str], signature: Optional[str]) -> str:
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise VerificationFailed(f"Package not found: {archive_path}")
        digest = self.verify_hash(archive_path, expected_hash)
        self.verify_signature(archive_path, signature)
        return digest

    def extract(self, archive_path: Path, destination: Path) -> Path:
        """
        Unpack a .tar.gz/.tar or .zip archive into destination.

        Raises:
            ExtractionFailed: for unknown formats, corrupt archives and
                members that would land outside destination.
        """
        archive_path = Path(archive_path)
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        log_message(f"[PATCH] Extracting {archive_path.name} to {destination}")

        try:
            if zipfile.is_zipfile(archive_path):
                with zipfile.ZipFile(archive_path) as archive:
                    _check_member_names(archive.namelist())
                    archive.extractall(destination)
            elif tarfile.is_tarfile(archive_path):
                with tarfile.open(archive_path, "r:*") as archive:
                    _check_member_names(m.name for m in archive.getmembers())
                    archive.extractall(destination, filter="data")
            else:
                raise ExtractionFailed(f"Unsupported archive format: {archive_path.name}")
        except ExtractionFailed:
            raise
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise ExtractionFailed(f"Failed to extract {archive_path.name}: {e}") from e

        count = sum(len(files) for _, _, files in os.walk(destination))
        log_message(f"[PATCH] ✓ Extracted {count} file(s)")
        return destination

    def validate_structure(self, payload_root: Path, operations) -> None:
        """Every replace source must be present in the payload with the right type."""
        missing = []
        for op in operations:
            if not op.kind.is_replace:
                continue
            source = op.source(payload_root)
            if op.kind.is_directory:
                ok = source.is_dir()
            else:
                ok = source.is_file()
            if not ok:
                missing.append(op.relative_path)
        if missing:
            raise VerificationFailed(f"Package is missing required entries: {', '.join(sorted(missing))}")


def _check_member_names(names: Iterable[str]) -> None:
    for name in names:
        normalised = name.replace("\\", "/")
        if normalised.startswith("/") or ".." in PurePosixPath(normalised).parts:
            raise ExtractionFailed(f"Archive member escapes extraction directory: {name}")
