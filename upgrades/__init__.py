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
Compose stack upgrade orchestration.

Chooses between a full reinstall and an incremental patch, applies the
chosen package atomically and migrates the database schema.
"""

from .utils.index import log_message
from .index import (
    UpgradeContext,
    UpgradeError,
    run_upgrade,
    migrate_schema,
    setup_upgrade_logging,
    strategy_name,
)

__all__ = [
    'log_message',
    'UpgradeContext',
    'UpgradeError',
    'run_upgrade',
    'migrate_schema',
    'setup_upgrade_logging',
    'strategy_name'
]
