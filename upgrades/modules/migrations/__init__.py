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
Migrations Module - Database Schema Migration

Applies generated schema diff scripts to the stack's MySQL database.

Key Features:
- Single transaction: Statements run in order inside engine.begin()
- Fail fast: The first failing statement stops the run and is reported
- Partial-apply awareness: Reports whether earlier DDL was already committed
- Compose-derived connection: Credentials and port read from docker-compose.yml
- Comprehensive logging: Unified logger plus an optional migration log file

Components:
- MigrationRunner: Statement execution and connection checks
- DatabaseConfig: Connection settings from a compose file
"""

from .index import MigrationRunner, MigrationError, DatabaseConfig

__all__ = [
    'MigrationRunner',
    'MigrationError',
    'DatabaseConfig'
]

__version__ = "1.0.0"
