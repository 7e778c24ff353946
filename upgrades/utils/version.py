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
Four-segment release versions: major.minor.patch.build.

The build segment is the patch level applied on top of a base release
(major.minor.patch). Parsing is delegated to packaging.version so that
the accepted syntax matches the rest of the update tooling.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

from packaging import version as pkg_version

MAX_SEGMENT = 999
MAX_BUILD = 9999


class VersionError(ValueError):
    """Custom exception for version parsing and validation failures."""
    pass


class VersionComparison(Enum):
    """Relationship between the running version and a server version."""
    EQUAL = "equal"
    NEWER = "newer"
    PATCH_UPGRADEABLE = "patch_upgradeable"
    FULL_UPGRADE_REQUIRED = "full_upgrade_required"


@dataclass(frozen=True, order=True)
class Version:
    major: int
    minor: int
    patch: int
    build: int = 0

    @classmethod
    def parse(cls, value: Union[str, "Version"]) -> "Version":
        """
        Parse "1.2.3" or "1.2.3.4", with an optional leading "v".

        Raises:
            VersionError: for anything that is not a plain three or four
                segment release number.
        """
        if isinstance(value, Version):
            return value
        if not isinstance(value, str) or not value.strip():
            raise VersionError(f"Invalid version: {value!r}")

        try:
            parsed = pkg_version.Version(value.strip())
        except pkg_version.InvalidVersion as e:
            raise VersionError(f"Invalid version: {value!r}") from e

        if parsed.epoch or parsed.pre or parsed.post is not None or parsed.dev is not None or parsed.local:
            raise VersionError(f"Version must be a plain release number: {value!r}")

        release = parsed.release
        if len(release) not in (3, 4):
            raise VersionError(
                f"Version must have 3 or 4 segments (major.minor.patch[.build]): {value!r}"
            )
        return cls(*release)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}.{self.build}"

    def base_version(self) -> "Version":
        """The release this build sits on, with the build level cleared."""
        return Version(self.major, self.minor, self.patch, 0)

    def base_version_string(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def to_short_string(self) -> str:
        """Three segments when the build level is zero, four otherwise."""
        if self.build == 0:
            return self.base_version_string()
        return str(self)

    def can_apply_patch(self, patch_base: "Version") -> bool:
        """A patch only applies on top of the same base release."""
        return self.base_version() == patch_base.base_version()

    def is_compatible_with_patch(self, patch_version: "Version") -> bool:
        return self.can_apply_patch(patch_version) and self.build <= patch_version.build

    def validate(self) -> None:
        if (
            self.major > MAX_SEGMENT
            or self.minor > MAX_SEGMENT
            or self.patch > MAX_SEGMENT
            or self.build > MAX_BUILD
        ):
            raise VersionError(f"Version number out of range: {self}")
        if min(self.major, self.minor, self.patch, self.build) < 0:
            raise VersionError(f"Version segments must be non-negative: {self}")

    def compare_detailed(self, server_version: "Version") -> VersionComparison:
        """Classify how this (running) version relates to a server version."""
        if self == server_version:
            return VersionComparison.EQUAL

        if self.can_apply_patch(server_version):
            if self.build < server_version.build:
                return VersionComparison.PATCH_UPGRADEABLE
            return VersionComparison.NEWER

        if self.base_version() < server_version.base_version():
            return VersionComparison.FULL_UPGRADE_REQUIRED
        return VersionComparison.NEWER
