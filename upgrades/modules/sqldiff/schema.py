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
In-memory model of a MySQL schema: tables, columns, column types and
indexes, with canonical SQL rendering for each.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

INTEGER_TYPES = frozenset({"TINYINT", "SMALLINT", "MEDIUMINT", "INT", "BIGINT"})
NUMERIC_TYPES = INTEGER_TYPES | frozenset({"DECIMAL", "FLOAT", "DOUBLE", "BIT"})
VALUE_LIST_TYPES = frozenset({"ENUM", "SET"})

_STRING_ESCAPES = {
    "\\": "\\\\",
    "'": "''",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\0": "\\0",
}


class SchemaParseError(Exception):
    """Custom exception for DDL that cannot be parsed or applied to a schema."""

    def __init__(self, message: str, statement: Optional[str] = None):
        self.message = message
        self.statement = statement
        if statement:
            super().__init__(f"{message} in statement: {statement}")
        else:
            super().__init__(message)


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_string(value: str) -> str:
    return "'" + "".join(_STRING_ESCAPES.get(ch, ch) for ch in value) + "'"


@dataclass(frozen=True)
class ColumnType:
    """A column data type in canonical form (aliases already resolved)."""
    name: str
    length: Optional[int] = None
    scale: Optional[int] = None
    values: Tuple[str, ...] = ()
    unsigned: bool = False
    zerofill: bool = False
    charset: Optional[str] = None
    collate: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return self.name in NUMERIC_TYPES

    def render(self) -> str:
        text = self.name
        if self.name in VALUE_LIST_TYPES:
            text += "(" + ", ".join(quote_string(v) for v in self.values) + ")"
        elif self.length is not None:
            if self.scale is not None:
                text += f"({self.length},{self.scale})"
            else:
                text += f"({self.length})"
        if self.unsigned:
            text += " UNSIGNED"
        if self.zerofill:
            text += " ZEROFILL"
        if self.charset:
            text += f" CHARACTER SET {self.charset}"
        if self.collate:
            text += f" COLLATE {self.collate}"
        return text

    def comparison_key(self) -> tuple:
        """
        Two types with equal keys are the same to the server. Integer
        display widths carry no meaning except TINYINT(1), the boolean
        idiom.
        """
        length, scale = self.length, self.scale
        if self.name in INTEGER_TYPES and not (self.name == "TINYINT" and length == 1):
            length = None
        if self.name == "DECIMAL":
            length = 10 if length is None else length
            scale = 0 if scale is None else scale
        return (
            self.name,
            length,
            scale,
            self.values,
            self.unsigned,
            self.zerofill,
            (self.charset or "").lower(),
            (self.collate or "").lower(),
        )

    def __str__(self) -> str:
        return self.render()


@dataclass
class ColumnDefinition:
    name: str
    type: ColumnType
    nullable: bool = True
    default: Optional[str] = None
    auto_increment: bool = False
    on_update: Optional[str] = None
    comment: Optional[str] = None
    generated: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name.lower()

    def render(self) -> str:
        parts = [quote_identifier(self.name), self.type.render()]
        if self.generated:
            parts.append(self.generated)
        if not self.nullable:
            parts.append("NOT NULL")
        elif self.type.name == "TIMESTAMP":
            # Older servers make a bare TIMESTAMP column NOT NULL
            parts.append("NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.on_update:
            parts.append(f"ON UPDATE {self.on_update}")
        if self.auto_increment:
            parts.append("AUTO_INCREMENT")
        if self.comment:
            parts.append(f"COMMENT {quote_string(self.comment)}")
        return " ".join(parts)

    def comparison_key(self) -> tuple:
        return (
            self.type.comparison_key(),
            self.nullable,
            self.default,
            self.on_update,
            self.auto_increment,
            self.comment or "",
            self.generated,
        )


class IndexKind(Enum):
    PRIMARY = "PRIMARY KEY"
    UNIQUE = "UNIQUE INDEX"
    INDEX = "INDEX"
    FULLTEXT = "FULLTEXT INDEX"
    SPATIAL = "SPATIAL INDEX"


@dataclass(frozen=True)
class IndexColumn:
    name: str
    length: Optional[int] = None
    descending: bool = False
    expression: Optional[str] = None

    def render(self) -> str:
        if self.expression:
            text = f"({self.expression})"
        else:
            text = quote_identifier(self.name)
            if self.length is not None:
                text += f"({self.length})"
        if self.descending:
            text += " DESC"
        return text

    def comparison_key(self) -> tuple:
        return (self.name.lower(), self.length, self.descending, self.expression)


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    kind: IndexKind
    columns: Tuple[IndexColumn, ...]
    using: Optional[str] = None

    def __post_init__(self):
        if not self.columns:
            raise SchemaParseError(f"Index {self.name} has no columns")

    @property
    def key(self) -> str:
        return self.name.lower()

    def column_list(self) -> str:
        return "(" + ", ".join(c.render() for c in self.columns) + ")"

    def render_definition(self) -> str:
        if self.kind is IndexKind.PRIMARY:
            return f"PRIMARY KEY {self.column_list()}"
        return f"{self.kind.value} {quote_identifier(self.name)} {self.column_list()}"

    def render_add(self) -> str:
        return f"ADD {self.render_definition()}"

    def render_drop(self) -> str:
        if self.kind is IndexKind.PRIMARY:
            return "DROP PRIMARY KEY"
        return f"DROP INDEX {quote_identifier(self.name)}"

    def same_as(self, other: "IndexDefinition") -> bool:
        return (
            self.kind is other.kind
            and [c.comparison_key() for c in self.columns] == [c.comparison_key() for c in other.columns]
        )

    def covers(self, column_key: str) -> bool:
        return any(c.name.lower() == column_key for c in self.columns)


@dataclass
class TableDefinition:
    name: str
    columns: List[ColumnDefinition] = field(default_factory=list)
    primary_key: Optional[IndexDefinition] = None
    indexes: Dict[str, IndexDefinition] = field(default_factory=dict)
    engine: Optional[str] = None
    charset: Optional[str] = None
    collate: Optional[str] = None
    comment: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name.lower()

    def column(self, name: str) -> Optional[ColumnDefinition]:
        key = name.lower()
        for column in self.columns:
            if column.key == key:
                return column
        return None

    def position_of(self, name: str) -> int:
        key = name.lower()
        for position, column in enumerate(self.columns):
            if column.key == key:
                return position
        raise SchemaParseError(f"Unknown column {name} in table {self.name}")

    def add_column(self, column: ColumnDefinition, first: bool = False, after: Optional[str] = None) -> None:
        if self.column(column.name) is not None:
            raise SchemaParseError(f"Duplicate column {column.name} in table {self.name}")
        self.columns.insert(self._insert_position(first, after), column)

    def replace_column(self, old_name: str, column: ColumnDefinition,
                       first: bool = False, after: Optional[str] = None) -> None:
        """MODIFY / CHANGE semantics: swap the definition, optionally moving it."""
        position = self.position_of(old_name)
        if column.key != old_name.lower() and self.column(column.name) is not None:
            raise SchemaParseError(f"Duplicate column {column.name} in table {self.name}")
        del self.columns[position]
        if first or after:
            position = self._insert_position(first, after)
        self.columns.insert(position, column)
        if column.key != old_name.lower():
            self._rename_index_column(old_name.lower(), column.name)

    def drop_column(self, name: str) -> None:
        position = self.position_of(name)
        key = self.columns[position].key
        del self.columns[position]
        # the server strips the column from its indexes and drops emptied ones
        if self.primary_key is not None and self.primary_key.covers(key):
            self.primary_key = _without_column(self.primary_key, key)
        for index_key in list(self.indexes):
            index = self.indexes[index_key]
            if index.covers(key):
                remaining = _without_column(index, key)
                if remaining is None:
                    del self.indexes[index_key]
                else:
                    self.indexes[index_key] = remaining

    def add_index(self, index: IndexDefinition) -> None:
        for column in index.columns:
            if column.expression is None and self.column(column.name) is None:
                raise SchemaParseError(
                    f"Index {index.name} references unknown column {column.name} in table {self.name}"
                )
        if index.kind is IndexKind.PRIMARY:
            if self.primary_key is not None:
                raise SchemaParseError(f"Multiple primary keys defined for table {self.name}")
            self.primary_key = index
            for column in index.columns:
                if column.expression is None:
                    self.column(column.name).nullable = False
            return
        if index.key in self.indexes or index.key == "primary":
            raise SchemaParseError(f"Duplicate index {index.name} in table {self.name}")
        self.indexes[index.key] = index

    def drop_index(self, name: str) -> None:
        if name.lower() == "primary":
            self.drop_primary_key()
            return
        if name.lower() not in self.indexes:
            raise SchemaParseError(f"Unknown index {name} in table {self.name}")
        del self.indexes[name.lower()]

    def drop_primary_key(self) -> None:
        if self.primary_key is None:
            raise SchemaParseError(f"Table {self.name} has no primary key")
        self.primary_key = None

    def rename_index(self, old_name: str, new_name: str) -> None:
        index = self.indexes.pop(old_name.lower(), None)
        if index is None:
            raise SchemaParseError(f"Unknown index {old_name} in table {self.name}")
        self.add_index(replace(index, name=new_name))

    def generated_index_name(self, first_column: str) -> str:
        """Name the server gives an unnamed index: first column, then _2, _3..."""
        candidate = first_column
        suffix = 2
        while candidate.lower() in self.indexes or candidate.lower() == "primary":
            candidate = f"{first_column}_{suffix}"
            suffix += 1
        return candidate

    def render_options(self) -> List[str]:
        options = []
        if self.engine:
            options.append(f"ENGINE={self.engine}")
        if self.charset:
            options.append(f"DEFAULT CHARSET={self.charset}")
        if self.collate:
            options.append(f"COLLATE={self.collate}")
        if self.comment:
            options.append(f"COMMENT={quote_string(self.comment)}")
        return options

    def render_create(self) -> str:
        definitions = [column.render() for column in self.columns]
        if self.primary_key is not None:
            definitions.append(self.primary_key.render_definition())
        definitions.extend(index.render_definition() for index in self.indexes.values())
        statement = f"CREATE TABLE IF NOT EXISTS {quote_identifier(self.name)} ({', '.join(definitions)})"
        options = self.render_options()
        if options:
            statement += " " + " ".join(options)
        return statement + ";"

    def _insert_position(self, first: bool, after: Optional[str]) -> int:
        if first:
            return 0
        if after:
            return self.position_of(after) + 1
        return len(self.columns)

    def _rename_index_column(self, old_key: str, new_name: str) -> None:
        def renamed(index: IndexDefinition) -> IndexDefinition:
            columns = tuple(
                replace(c, name=new_name) if c.name.lower() == old_key else c
                for c in index.columns
            )
            return replace(index, columns=columns)

        if self.primary_key is not None:
            self.primary_key = renamed(self.primary_key)
        for index_key in list(self.indexes):
            self.indexes[index_key] = renamed(self.indexes[index_key])


def _without_column(index: IndexDefinition, column_key: str) -> Optional[IndexDefinition]:
    remaining = tuple(c for c in index.columns if c.name.lower() != column_key)
    if not remaining:
        return None
    return replace(index, columns=remaining)


@dataclass
class SchemaSnapshot:
    """Tables keyed by lower-cased name, in definition order."""
    tables: Dict[str, TableDefinition] = field(default_factory=dict)

    def get(self, name: str) -> Optional[TableDefinition]:
        return self.tables.get(name.lower())

    def add(self, table: TableDefinition) -> None:
        if table.key in self.tables:
            raise SchemaParseError(f"Table {table.name} already defined")
        self.tables[table.key] = table

    def remove(self, name: str) -> Optional[TableDefinition]:
        return self.tables.pop(name.lower(), None)

    def rename(self, old_name: str, new_name: str) -> None:
        table = self.remove(old_name)
        if table is None:
            raise SchemaParseError(f"Cannot rename unknown table {old_name}")
        table.name = new_name
        self.add(table)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self.tables

    def __iter__(self) -> Iterator[TableDefinition]:
        return iter(self.tables.values())

    def __len__(self) -> int:
        return len(self.tables)
