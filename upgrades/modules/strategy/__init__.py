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
Strategy Module - Upgrade Path Selection

Interprets a service release manifest and decides, for the running
version and CPU architecture, whether to skip the upgrade, reinstall the
full package, or apply an incremental patch.

Components:
- ServiceManifest: validated release manifest with per-architecture packages
- UpgradeStrategyManager: NoUpgrade / FullUpgrade / PatchUpgrade decision
"""

from .manifest import (
    ServiceManifest,
    PackageRef,
    PatchRef,
    PatchOperations,
    FileOpSet,
    ManifestError,
    validate_relative_path,
)
from .index import (
    UpgradeStrategyManager,
    UpgradeStrategy,
    NoUpgrade,
    FullUpgrade,
    PatchUpgrade,
    DownloadType,
    get_changed_files,
    patch_applies_to,
)

__all__ = [
    'ServiceManifest',
    'PackageRef',
    'PatchRef',
    'PatchOperations',
    'FileOpSet',
    'ManifestError',
    'validate_relative_path',
    'UpgradeStrategyManager',
    'UpgradeStrategy',
    'NoUpgrade',
    'FullUpgrade',
    'PatchUpgrade',
    'DownloadType',
    'get_changed_files',
    'patch_applies_to',
]

__version__ = "1.0.0"
