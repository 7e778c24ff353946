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
Utilities for the upgrade orchestration system.

This module provides common utilities used by the upgrade modules.
"""

from .index import (
    log_message,
    load_index,
    get_schema_version,
    compute_file_sha256,
    compute_folder_sha256,
    compute_path_sha256,
)
from .version import Version, VersionComparison, VersionError
from .architecture import Architecture
from .downloader import DownloadResult, download_file

__all__ = [
    'log_message',
    'load_index',
    'get_schema_version',
    'compute_file_sha256',
    'compute_folder_sha256',
    'compute_path_sha256',
    'Version',
    'VersionComparison',
    'VersionError',
    'Architecture',
    'DownloadResult',
    'download_file'
]
