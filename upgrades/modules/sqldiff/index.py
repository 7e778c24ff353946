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

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from upgrades.utils.index import log_message
from .parser import parse_schema
from .schema import (
    IndexDefinition,
    SchemaSnapshot,
    TableDefinition,
    quote_identifier,
    quote_string,
)


class ClauseKind(Enum):
    DROP_INDEX = "drop_index"
    DROP_COLUMN = "drop_column"
    ADD_COLUMN = "add_column"
    MODIFY_COLUMN = "modify_column"
    ADD_INDEX = "add_index"
    TABLE_OPTIONS = "table_options"


DEFAULT_CLAUSE_ORDER = (
    ClauseKind.DROP_INDEX,
    ClauseKind.DROP_COLUMN,
    ClauseKind.ADD_COLUMN,
    ClauseKind.MODIFY_COLUMN,
    ClauseKind.ADD_INDEX,
    ClauseKind.TABLE_OPTIONS,
)


@dataclass(frozen=True)
class DiffOptions:
    """
    Knobs for diff generation.

    clause_order decides how the clauses inside one ALTER TABLE are
    sequenced. It must list every ClauseKind exactly once, with index
    drops ahead of column drops and column adds ahead of index adds.
    """
    clause_order: Tuple[ClauseKind, ...] = DEFAULT_CLAUSE_ORDER

    def __post_init__(self):
        order = tuple(self.clause_order)
        if len(order) != len(ClauseKind) or set(order) != set(ClauseKind):
            raise ValueError("clause_order must name every clause kind exactly once")
        if order.index(ClauseKind.DROP_INDEX) > order.index(ClauseKind.DROP_COLUMN):
            raise ValueError("DROP_INDEX must come before DROP_COLUMN")
        if order.index(ClauseKind.ADD_COLUMN) > order.index(ClauseKind.ADD_INDEX):
            raise ValueError("ADD_COLUMN must come before ADD_INDEX")
        object.__setattr__(self, "clause_order", order)


@dataclass
class SchemaDiff:
    statements: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    altered: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.statements

    def to_sql(self) -> str:
        if not self.statements:
            return ""
        return "\n".join(self.statements) + "\n"

    def describe(self, old_version: Optional[str], new_version: str) -> str:
        prefix = f"Schema diff {old_version or 'empty'} -> {new_version}"
        if self.is_empty():
            return f"{prefix}: no changes"
        return (
            f"{prefix}: {len(self.created)} table(s) added, "
            f"{len(self.altered)} altered, {len(self.dropped)} removed"
        )


def _diff_indexes(old: TableDefinition, new: TableDefinition) -> Tuple[List[str], List[str]]:
    drops, adds = [], []

    if old.primary_key is not None and (new.primary_key is None or not old.primary_key.same_as(new.primary_key)):
        drops.append(old.primary_key.render_drop())
    if new.primary_key is not None and (old.primary_key is None or not old.primary_key.same_as(new.primary_key)):
        adds.append(new.primary_key.render_add())

    for key, index in old.indexes.items():
        replacement = new.indexes.get(key)
        if replacement is None or not _same_index(index, replacement):
            drops.append(index.render_drop())
    for key, index in new.indexes.items():
        previous = old.indexes.get(key)
        if previous is None or not _same_index(previous, index):
            adds.append(index.render_add())
    return drops, adds


def _same_index(a: IndexDefinition, b: IndexDefinition) -> bool:
    return a.same_as(b) and (a.using or "").upper() == (b.using or "").upper()


def _diff_options(old: TableDefinition, new: TableDefinition) -> List[str]:
    clauses = []
    if new.engine and (old.engine or "").lower() != new.engine.lower():
        clauses.append(f"ENGINE={new.engine}")
    if new.charset and (old.charset or "").lower() != new.charset.lower():
        clauses.append(f"DEFAULT CHARSET={new.charset}")
    if new.collate and (old.collate or "").lower() != new.collate.lower():
        clauses.append(f"COLLATE={new.collate}")
    if (old.comment or "") != (new.comment or ""):
        clauses.append(f"COMMENT={quote_string(new.comment or '')}")
    return clauses


def diff_table(old: TableDefinition, new: TableDefinition, options: Optional[DiffOptions] = None) -> List[str]:
    """Ordered ALTER TABLE clauses turning old into new; empty when equal."""
    options = options or DiffOptions()
    clauses = {kind: [] for kind in ClauseKind}

    for column in old.columns:
        if new.column(column.name) is None:
            clauses[ClauseKind.DROP_COLUMN].append(f"DROP COLUMN {quote_identifier(column.name)}")

    previous = None
    for column in new.columns:
        existing = old.column(column.name)
        if existing is None:
            position = f"AFTER {quote_identifier(previous.name)}" if previous is not None else "FIRST"
            clauses[ClauseKind.ADD_COLUMN].append(f"ADD COLUMN {column.render()} {position}")
        elif existing.comparison_key() != column.comparison_key():
            clauses[ClauseKind.MODIFY_COLUMN].append(f"MODIFY COLUMN {column.render()}")
        previous = column

    drops, adds = _diff_indexes(old, new)
    clauses[ClauseKind.DROP_INDEX].extend(drops)
    clauses[ClauseKind.ADD_INDEX].extend(adds)
    clauses[ClauseKind.TABLE_OPTIONS].extend(_diff_options(old, new))

    ordered = []
    for kind in options.clause_order:
        ordered.extend(clauses[kind])
    return ordered


def diff_schemas(old: SchemaSnapshot, new: SchemaSnapshot, options: Optional[DiffOptions] = None) -> SchemaDiff:
    """
    Compare two snapshots.

    Statements come out as CREATE TABLE for new tables, one ALTER TABLE
    per changed table and DROP TABLE for removed ones, in that order.
    A renamed table shows up as a drop plus a create.
    """
    options = options or DiffOptions()
    diff = SchemaDiff()
    creates, alters, drops = [], [], []

    for table in new:
        if table.name not in old:
            creates.append(table.render_create())
            diff.created.append(table.name)

    for table in new:
        previous = old.get(table.name)
        if previous is None:
            continue
        clauses = diff_table(previous, table, options)
        if clauses:
            alters.append(f"ALTER TABLE {quote_identifier(table.name)} {', '.join(clauses)};")
            diff.altered.append(table.name)

    for table in old:
        if table.name not in new:
            drops.append(f"DROP TABLE IF EXISTS {quote_identifier(table.name)};")
            diff.dropped.append(table.name)

    diff.statements = creates + alters + drops
    return diff


def generate_schema_diff(old_sql: Optional[str], new_sql: str, old_version: Optional[str],
                         new_version: str, options: Optional[DiffOptions] = None) -> Tuple[str, str]:
    """
    Produce the migration script between two schema dumps.

    Args:
        old_sql: Schema of the installed version, or None for a fresh install
        new_sql: Schema shipped with the target version
        old_version: Installed version label, if known
        new_version: Target version label

    Returns:
        tuple: (diff_sql, description); diff_sql is empty when nothing changed

    Raises:
        SchemaParseError: If either schema cannot be parsed
    """
    log_message(f"[SQLDIFF] Comparing schema {old_version or 'empty'} -> {new_version}")
    old_schema = parse_schema(old_sql)
    new_schema = parse_schema(new_sql)
    diff = diff_schemas(old_schema, new_schema, options)
    description = diff.describe(old_version, new_version)
    log_message(f"[SQLDIFF] {description}")
    return diff.to_sql(), description


def write_diff_sql(path: Union[str, Path], diff_sql: str, description: str,
                   old_version: Optional[str], new_version: str) -> Path:
    """Write a diff script with its metadata header; returns the path written."""
    path = Path(path)
    if path.parent and not path.parent.exists():
        os.makedirs(path.parent, exist_ok=True)

    lines = [
        "-- Schema migration",
        f"-- From version: {old_version or 'empty'}",
        f"-- To version: {new_version}",
        f"-- Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}",
        f"-- {description}",
    ]
    if not diff_sql.strip():
        lines.append("-- No statements to execute, schema unchanged")
    content = "\n".join(lines) + "\n"
    if diff_sql.strip():
        content += "\n" + diff_sql
        if not diff_sql.endswith("\n"):
            content += "\n"

    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    log_message(f"[SQLDIFF] Wrote diff script to {path}")
    return path
