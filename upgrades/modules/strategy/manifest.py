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

import re
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Dict, FrozenSet, List, Optional

from upgrades.utils.architecture import Architecture
from upgrades.utils.version import Version, VersionError

_RFC3339 = re.compile(
    r"^\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)
_ALLOWED_URL_PREFIXES = ("http://", "https://", "/")


class ManifestError(Exception):
    """Custom exception for malformed or unusable release manifests."""
    pass


def _validate_url(url: Any, field_name: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ManifestError(f"{field_name}: URL must not be empty")
    if not url.startswith(_ALLOWED_URL_PREFIXES):
        raise ManifestError(f"{field_name}: unsupported URL {url!r}")
    return url


def validate_relative_path(path: Any, field_name: str) -> str:
    """Reject paths that could escape the managed root."""
    if not isinstance(path, str) or not path.strip():
        raise ManifestError(f"{field_name}: path must not be empty")
    if path.startswith(("/", "\\")) or re.match(r"^[A-Za-z]:[\\/]", path):
        raise ManifestError(f"{field_name}: absolute path not allowed: {path}")
    if ".." in PurePosixPath(path.replace("\\", "/")).parts:
        raise ManifestError(f"{field_name}: parent traversal not allowed: {path}")
    return path.strip("/")


def _validate_release_date(value: Any) -> str:
    if value in (None, ""):
        return ""
    if not isinstance(value, str) or not _RFC3339.match(value):
        raise ManifestError(f"release_date: not an RFC 3339 timestamp: {value!r}")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as e:
        raise ManifestError(f"release_date: {e}") from e
    return value


@dataclass(frozen=True)
class PackageRef:
    """Location and integrity data of a downloadable package."""
    url: str
    hash: Optional[str] = None
    signature: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], field_name: str) -> "PackageRef":
        if not isinstance(data, dict):
            raise ManifestError(f"{field_name}: expected an object")
        size = data.get("size")
        if size is not None and (not isinstance(size, int) or size < 0):
            raise ManifestError(f"{field_name}.size: must be a non-negative integer")
        package_hash = data.get("hash")
        if package_hash is not None and not str(package_hash).strip():
            raise ManifestError(f"{field_name}.hash: must not be empty")
        return cls(
            url=_validate_url(data.get("url"), f"{field_name}.url"),
            hash=package_hash or None,
            signature=data.get("signature") or None,
            size=size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class FileOpSet:
    files: FrozenSet[str] = frozenset()
    directories: FrozenSet[str] = frozenset()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], field_name: str) -> "FileOpSet":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ManifestError(f"{field_name}: expected an object")
        files = [validate_relative_path(p, f"{field_name}.files") for p in data.get("files") or []]
        dirs = [validate_relative_path(p, f"{field_name}.directories") for p in data.get("directories") or []]
        return cls(frozenset(files), frozenset(dirs))

    def paths(self) -> List[str]:
        return sorted(self.files | self.directories)

    def __len__(self) -> int:
        return len(self.files) + len(self.directories)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"files": sorted(self.files), "directories": sorted(self.directories)}


@dataclass(frozen=True)
class PatchOperations:
    replace: FileOpSet = field(default_factory=FileOpSet)
    delete: FileOpSet = field(default_factory=FileOpSet)

    def total_operations(self) -> int:
        return len(self.replace) + len(self.delete)

    def changed_paths(self) -> List[str]:
        return sorted(set(self.replace.paths()) | set(self.delete.paths()))


@dataclass(frozen=True)
class PatchRef:
    """Architecture-specific delta package and the path operations it carries."""
    url: str
    operations: PatchOperations
    hash: Optional[str] = None
    signature: Optional[str] = None
    notes: Optional[str] = None
    base_version: Optional[Version] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], field_name: str) -> "PatchRef":
        if not isinstance(data, dict):
            raise ManifestError(f"{field_name}: expected an object")
        ops = data.get("operations") or {}
        if not isinstance(ops, dict):
            raise ManifestError(f"{field_name}.operations: expected an object")
        operations = PatchOperations(
            replace=FileOpSet.from_dict(ops.get("replace"), f"{field_name}.operations.replace"),
            delete=FileOpSet.from_dict(ops.get("delete"), f"{field_name}.operations.delete"),
        )
        base_version = None
        if data.get("base_version"):
            try:
                base_version = Version.parse(data["base_version"])
            except VersionError as e:
                raise ManifestError(f"{field_name}.base_version: {e}") from e
        patch_hash = data.get("hash")
        if patch_hash is not None and not str(patch_hash).strip():
            raise ManifestError(f"{field_name}.hash: must not be empty")
        return cls(
            url=_validate_url(data.get("url"), f"{field_name}.url"),
            operations=operations,
            hash=patch_hash or None,
            signature=data.get("signature") or None,
            notes=data.get("notes"),
            base_version=base_version,
        )


def _arch_map(data: Any, field_name: str, factory) -> Dict[Architecture, Any]:
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ManifestError(f"{field_name}: expected an object keyed by architecture")
    result = {}
    for key, value in data.items():
        arch = Architecture.parse(key)
        if arch is None:
            raise ManifestError(f"{field_name}: unknown architecture {key!r}")
        if value is None:
            continue
        result[arch] = factory(value, f"{field_name}.{key}")
    return result


@dataclass(frozen=True)
class ServiceManifest:
    """Release manifest for one version of the service stack."""
    version: Version
    release_date: str = ""
    release_notes: str = ""
    full_package: Optional[PackageRef] = None
    platforms: Dict[Architecture, PackageRef] = field(default_factory=dict)
    patch: Dict[Architecture, PatchRef] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceManifest":
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")
        try:
            manifest_version = Version.parse(data.get("version"))
            manifest_version.validate()
        except VersionError as e:
            raise ManifestError(f"version: {e}") from e

        packages = data.get("packages") or {}
        if not isinstance(packages, dict):
            raise ManifestError("packages: expected an object")
        full_package = None
        if packages.get("full"):
            full_package = PackageRef.from_dict(packages["full"], "packages.full")

        manifest = cls(
            version=manifest_version,
            release_date=_validate_release_date(data.get("release_date")),
            release_notes=data.get("release_notes") or "",
            full_package=full_package,
            platforms=_arch_map(data.get("platforms"), "platforms", PackageRef.from_dict),
            patch=_arch_map(data.get("patch"), "patch", PatchRef.from_dict),
        )
        if manifest.full_package is None and not manifest.platforms:
            raise ManifestError("Manifest provides neither packages.full nor any platform package")
        return manifest

    @classmethod
    def from_json(cls, text: str) -> "ServiceManifest":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}") from e
        return cls.from_dict(data)

    def supports_architecture(self, arch: Architecture) -> bool:
        if not self.platforms:
            return self.full_package is not None
        return arch in self.platforms

    def has_patch_for(self, arch: Architecture) -> bool:
        return arch in self.patch

    def full_package_for(self, arch: Optional[Architecture]) -> Optional[PackageRef]:
        """Platform package for arch when published, else the generic full package."""
        if arch is not None and arch in self.platforms:
            return self.platforms[arch]
        return self.full_package
