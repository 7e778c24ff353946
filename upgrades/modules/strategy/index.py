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

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from upgrades.utils.index import log_message
from upgrades.utils.architecture import Architecture
from upgrades.utils.version import Version
from .manifest import ServiceManifest, PatchRef, ManifestError

# Paths backed up by the caller before a full reinstall
FULL_UPGRADE_PRESERVED_PATHS = ["data", "upload"]


class DownloadType(Enum):
    FULL = "full"
    PATCH = "patch"


@dataclass(frozen=True)
class NoUpgrade:
    target_version: Version

    def changed_files(self) -> List[str]:
        return []


@dataclass(frozen=True)
class FullUpgrade:
    url: str
    hash: Optional[str]
    signature: Optional[str]
    target_version: Version
    download_type: DownloadType = DownloadType.FULL

    def changed_files(self) -> List[str]:
        return list(FULL_UPGRADE_PRESERVED_PATHS)


@dataclass(frozen=True)
class PatchUpgrade:
    patch_info: PatchRef
    target_version: Version
    download_type: DownloadType = DownloadType.PATCH

    def changed_files(self) -> List[str]:
        return self.patch_info.operations.changed_paths()


UpgradeStrategy = Union[NoUpgrade, FullUpgrade, PatchUpgrade]


def patch_applies_to(patch: PatchRef, current: Version, target: Version) -> bool:
    """
    True when patch is an exact delta from current to target.

    A declared base_version must equal the running version. Without one,
    the running version must share the target's base release and sit on
    a lower build level.
    """
    if patch.base_version is not None:
        return patch.base_version == current
    return current.can_apply_patch(target) and current.build < target.build


class UpgradeStrategyManager:
    """
    Chooses between no upgrade, a full reinstall and an incremental patch.

    The decision is a pure function of its inputs, except that a manager
    built with an UpgradeContext also checks that the managed root and
    compose file exist; a patch needs a deployment to patch.
    """

    def __init__(self, context=None, architecture: Optional[Architecture] = None):
        self.context = context
        if architecture is None and context is not None:
            architecture = getattr(context, "architecture", None)
        self.architecture = architecture or Architecture.detect()

    def determine_strategy(
        self,
        current_version: Union[str, Version],
        force_full: bool,
        manifest: ServiceManifest,
    ) -> UpgradeStrategy:
        current = Version.parse(current_version)
        target = manifest.version

        log_message(f"[STRATEGY] Current version: {current}")
        log_message(f"[STRATEGY] Server version: {target}")
        log_message(f"[STRATEGY] Architecture: {self.architecture or 'unsupported'}")
        log_message(f"[STRATEGY] Force full: {force_full}")

        if not force_full and target <= current:
            log_message("[STRATEGY] ✓ Already up to date, no upgrade needed")
            return NoUpgrade(target_version=target)

        if force_full:
            log_message("[STRATEGY] Forced full upgrade")
            return self.select_full_upgrade(manifest)

        if not self._deployment_present():
            log_message("[STRATEGY] Managed root or compose file missing, selecting full upgrade")
            return self.select_full_upgrade(manifest)

        patch = manifest.patch.get(self.architecture) if self.architecture else None
        if patch is None:
            log_message("[STRATEGY] No patch package for this architecture, selecting full upgrade")
            return self.select_full_upgrade(manifest)

        if not patch_applies_to(patch, current, target):
            base = patch.base_version or target.base_version()
            log_message(
                f"[STRATEGY] Patch base {base} does not match running version {current}, selecting full upgrade"
            )
            return self.select_full_upgrade(manifest)

        log_message(f"[STRATEGY] ⚡ Selecting patch upgrade ({patch.operations.total_operations()} operations)")
        return PatchUpgrade(patch_info=patch, target_version=target)

    def select_full_upgrade(self, manifest: ServiceManifest) -> FullUpgrade:
        package = manifest.full_package_for(self.architecture)
        if package is None:
            raise ManifestError(
                f"No full package available for architecture {self.architecture or 'unsupported'}"
            )
        log_message(f"[STRATEGY] 📦 Full package: {package.url}")
        return FullUpgrade(
            url=package.url,
            hash=package.hash,
            signature=package.signature,
            target_version=manifest.version,
        )

    def _deployment_present(self) -> bool:
        if self.context is None:
            return True
        work_dir = Path(self.context.work_dir)
        compose_file = Path(self.context.compose_file)
        return work_dir.is_dir() and compose_file.is_file()


def get_changed_files(strategy: UpgradeStrategy) -> List[str]:
    """Relative paths under the managed root this upgrade touches."""
    return strategy.changed_files()
