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
SQL Diff Module - MySQL Schema Differ

Parses two MySQL schema dumps and generates the DDL that migrates a
database from the first to the second.

Components:
- schema.py: Table, column and index model with canonical rendering
- parser.py: Statement splitter and DDL parser
- index.py: Schema comparison and diff script generation
"""

from .schema import (
    ColumnDefinition,
    ColumnType,
    IndexColumn,
    IndexDefinition,
    IndexKind,
    SchemaParseError,
    SchemaSnapshot,
    TableDefinition,
)
from .parser import parse_schema, split_statements
from .index import (
    ClauseKind,
    DiffOptions,
    SchemaDiff,
    diff_schemas,
    diff_table,
    generate_schema_diff,
    write_diff_sql,
)

__all__ = [
    'ColumnDefinition',
    'ColumnType',
    'IndexColumn',
    'IndexDefinition',
    'IndexKind',
    'SchemaParseError',
    'SchemaSnapshot',
    'TableDefinition',
    'parse_schema',
    'split_statements',
    'ClauseKind',
    'DiffOptions',
    'SchemaDiff',
    'diff_schemas',
    'diff_table',
    'generate_schema_diff',
    'write_diff_sql',
]

__version__ = "1.0.0"
