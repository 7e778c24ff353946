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

import platform
from enum import Enum
from typing import Optional

_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv8": "aarch64",
}


class Architecture(Enum):
    """CPU architectures release packages are published for."""
    X86_64 = "x86_64"
    AARCH64 = "aarch64"

    @classmethod
    def parse(cls, value: str) -> Optional["Architecture"]:
        """Map a platform string or alias to an Architecture, None if unsupported."""
        if not value:
            return None
        canonical = _ALIASES.get(value.strip().lower())
        if canonical is None:
            return None
        return cls(canonical)

    @classmethod
    def detect(cls) -> Optional["Architecture"]:
        """Architecture of the running host, None if it is not one we ship for."""
        return cls.parse(platform.machine())

    @property
    def display_name(self) -> str:
        return {"x86_64": "x86_64 (Intel/AMD 64-bit)", "aarch64": "aarch64 (ARM 64-bit)"}[self.value]

    def __str__(self) -> str:
        return self.value
