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
MySQL DDL parser.

Splits a script into statements and folds the schema-shaping ones
(CREATE/ALTER/DROP/RENAME TABLE, CREATE/DROP INDEX) into a
SchemaSnapshot. Every other statement is skipped.
"""

import re
import copy
from dataclasses import dataclass, replace
from typing import List, NamedTuple, Optional, Tuple

from upgrades.utils.index import log_message
from .schema import (
    ColumnDefinition,
    ColumnType,
    IndexColumn,
    IndexDefinition,
    IndexKind,
    SchemaParseError,
    SchemaSnapshot,
    TableDefinition,
    VALUE_LIST_TYPES,
    quote_identifier,
    quote_string,
)

WORD = "word"
IDENT = "ident"
STRING = "string"
LITERAL = "literal"
NUMBER = "number"
PUNCT = "punct"

TYPE_ALIASES = {
    "INTEGER": "INT",
    "INT1": "TINYINT",
    "INT2": "SMALLINT",
    "INT3": "MEDIUMINT",
    "MIDDLEINT": "MEDIUMINT",
    "INT4": "INT",
    "INT8": "BIGINT",
    "DEC": "DECIMAL",
    "NUMERIC": "DECIMAL",
    "FIXED": "DECIMAL",
    "REAL": "DOUBLE",
    "FLOAT4": "FLOAT",
    "FLOAT8": "DOUBLE",
    "CHARACTER": "CHAR",
    "NCHAR": "CHAR",
    "NVARCHAR": "VARCHAR",
    "VARCHARACTER": "VARCHAR",
}

KNOWN_TYPES = frozenset({
    "TINYINT", "SMALLINT", "MEDIUMINT", "INT", "BIGINT",
    "DECIMAL", "FLOAT", "DOUBLE", "BIT",
    "CHAR", "VARCHAR", "BINARY", "VARBINARY",
    "TINYTEXT", "TEXT", "MEDIUMTEXT", "LONGTEXT",
    "TINYBLOB", "BLOB", "MEDIUMBLOB", "LONGBLOB",
    "ENUM", "SET",
    "DATE", "TIME", "DATETIME", "TIMESTAMP", "YEAR",
    "JSON",
    "GEOMETRY", "POINT", "LINESTRING", "POLYGON", "MULTIPOINT",
    "MULTILINESTRING", "MULTIPOLYGON", "GEOMETRYCOLLECTION",
})

DATETIME_FUNCTIONS = {
    "CURRENT_TIMESTAMP": "CURRENT_TIMESTAMP",
    "NOW": "CURRENT_TIMESTAMP",
    "LOCALTIME": "CURRENT_TIMESTAMP",
    "LOCALTIMESTAMP": "CURRENT_TIMESTAMP",
    "CURRENT_DATE": "CURRENT_DATE",
    "CURDATE": "CURRENT_DATE",
    "CURRENT_TIME": "CURRENT_TIME",
    "CURTIME": "CURRENT_TIME",
    "UTC_TIMESTAMP": "UTC_TIMESTAMP",
}

INDEX_START_WORDS = ("PRIMARY", "UNIQUE", "INDEX", "KEY", "FULLTEXT", "SPATIAL", "CONSTRAINT", "FOREIGN", "CHECK")

TABLE_OPTION_WORDS = (
    "ENGINE", "DEFAULT", "CHARACTER", "CHARSET", "COLLATE", "COMMENT", "AUTO_INCREMENT",
    "ROW_FORMAT", "KEY_BLOCK_SIZE", "AVG_ROW_LENGTH", "CHECKSUM", "MAX_ROWS", "MIN_ROWS",
    "PACK_KEYS", "STATS_PERSISTENT", "STATS_AUTO_RECALC", "STATS_SAMPLE_PAGES",
    "TABLESPACE", "COMPRESSION", "ENCRYPTION", "INSERT_METHOD", "DELAY_KEY_WRITE",
)

IGNORED_ALTER_WORDS = (
    "ALGORITHM", "LOCK", "FORCE", "ORDER", "CONVERT", "ENABLE", "DISABLE", "DISCARD",
    "IMPORT", "WITH", "WITHOUT", "PARTITION", "REMOVE", "COALESCE", "REORGANIZE",
    "EXCHANGE", "ANALYZE", "OPTIMIZE", "REBUILD", "REPAIR", "TRUNCATE", "UPGRADE",
)

_INDEX_KINDS = {
    None: IndexKind.INDEX,
    "UNIQUE": IndexKind.UNIQUE,
    "FULLTEXT": IndexKind.FULLTEXT,
    "SPATIAL": IndexKind.SPATIAL,
}

_BACKSLASH_ESCAPES = {
    "0": "\0",
    "b": "\b",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "Z": "\x1a",
    "%": "\\%",
    "_": "\\_",
}

_NUMBER = re.compile(r"0[xX][0-9a-fA-F]+|0[bB][01]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_WORD = re.compile(r"[A-Za-z0-9_$@\u0080-\uffff]+")
_DELIMITER = re.compile(r"DELIMITER[ \t]+(\S+)[^\n]*(?:\n|$)", re.IGNORECASE)
_QUOTED_NUMBER = re.compile(r"^'(-?\d+(?:\.\d+)?)'$")


@dataclass(frozen=True)
class Token:
    kind: str
    value: str

    def is_word(self, *words: str) -> bool:
        return self.kind == WORD and self.value.upper() in words

    def is_punct(self, char: str) -> bool:
        return self.kind == PUNCT and self.value == char

    def render(self) -> str:
        if self.kind == STRING:
            return quote_string(self.value)
        if self.kind == IDENT:
            return quote_identifier(self.value)
        return self.value


class _IndexSpec(NamedTuple):
    kind: IndexKind
    name: Optional[str]
    columns: Tuple[IndexColumn, ...]
    using: Optional[str]


def _comment_end(sql: str, i: int) -> Optional[int]:
    """Index just past a comment starting at i, or None when there is none."""
    n = len(sql)
    if sql.startswith("--", i) and (i + 2 == n or sql[i + 2].isspace()):
        end = sql.find("\n", i)
        return n if end == -1 else end + 1
    if sql[i] == "#":
        end = sql.find("\n", i)
        return n if end == -1 else end + 1
    if sql.startswith("/*", i):
        end = sql.find("*/", i + 2)
        if end == -1:
            raise SchemaParseError("Unterminated comment", sql[i:i + 80])
        return end + 2
    return None


def _read_quoted(sql: str, i: int, quote: str, backslash: bool) -> Tuple[str, int]:
    """Unescaped body of the quoted text opening at i, and the index after it."""
    out = []
    n = len(sql)
    start = i
    i += 1
    while i < n:
        ch = sql[i]
        if backslash and ch == "\\" and i + 1 < n:
            nxt = sql[i + 1]
            out.append(_BACKSLASH_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and sql[i + 1] == quote:
                out.append(quote)
                i += 2
                continue
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise SchemaParseError("Unterminated quoted string", sql[start:start + 80])


def split_statements(sql: str) -> List[str]:
    """
    Split a script on its delimiter, honouring quotes and comments.

    Comments are dropped, DELIMITER directives are obeyed, and each
    returned statement is stripped and lacks its terminator.
    """
    statements = []
    buf: List[str] = []
    has_content = False
    delimiter = ";"
    i, n = 0, len(sql)

    def flush():
        text = "".join(buf).strip()
        if text:
            statements.append(text)
        buf.clear()

    while i < n:
        ch = sql[i]
        if not has_content:
            if ch.isspace():
                i += 1
                continue
            match = _DELIMITER.match(sql, i)
            if match:
                delimiter = match.group(1)
                i = match.end()
                continue

        end = _comment_end(sql, i)
        if end is not None:
            if has_content:
                buf.append(" ")
            i = end
            continue

        if ch in "'\"`":
            _, end = _read_quoted(sql, i, ch, backslash=(ch != "`"))
            buf.append(sql[i:end])
            has_content = True
            i = end
            continue

        if sql.startswith(delimiter, i):
            flush()
            has_content = False
            i += len(delimiter)
            continue

        buf.append(ch)
        has_content = True
        i += 1

    flush()
    return statements


def tokenize(sql: str) -> List[Token]:
    tokens = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if ch.isspace():
            i += 1
            continue

        end = _comment_end(sql, i)
        if end is not None:
            i = end
            continue

        if ch in "'\"":
            value, i = _read_quoted(sql, i, ch, backslash=True)
            tokens.append(Token(STRING, value))
            continue

        if ch == "`":
            value, i = _read_quoted(sql, i, "`", backslash=False)
            tokens.append(Token(IDENT, value))
            continue

        if ch.isdigit() or (ch == "." and i + 1 < n and sql[i + 1].isdigit()):
            match = _NUMBER.match(sql, i)
            tokens.append(Token(NUMBER, match.group(0)))
            i = match.end()
            continue

        match = _WORD.match(sql, i)
        if match:
            word = match.group(0)
            i = match.end()
            if i < n and sql[i] == "'" and (word.lower() in ("b", "x", "n") or word.startswith("_")):
                value, i = _read_quoted(sql, i, "'", backslash=True)
                if word.lower() in ("b", "x"):
                    tokens.append(Token(LITERAL, f"{word.lower()}'{value}'"))
                else:
                    tokens.append(Token(STRING, value))
                continue
            tokens.append(Token(WORD, word))
            continue

        tokens.append(Token(PUNCT, ch))
        i += 1
    return tokens


def render_tokens(tokens: List[Token]) -> str:
    """Re-assemble an expression with conventional spacing."""
    out = []
    previous = None
    for token in tokens:
        text = token.render()
        if previous is not None:
            tight = (
                previous.is_punct("(")
                or previous.is_punct(".")
                or token.is_punct(")")
                or token.is_punct(",")
                or token.is_punct(".")
                or (token.is_punct("(") and previous.kind in (WORD, IDENT))
            )
            if not tight:
                out.append(" ")
        out.append(text)
        previous = token
    return "".join(out)


class _TokenStream:
    def __init__(self, tokens: List[Token], statement: str):
        self.tokens = tokens
        self.statement = statement
        self.pos = 0

    def error(self, message: str) -> SchemaParseError:
        return SchemaParseError(message, self.statement)

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index]
        return None

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise self.error("Unexpected end of statement")
        self.pos += 1
        return token

    def peek_word(self, *words: str) -> bool:
        token = self.peek()
        return token is not None and token.is_word(*words)

    def peek_punct(self, char: str) -> bool:
        token = self.peek()
        return token is not None and token.is_punct(char)

    def accept(self, *words: str) -> Optional[str]:
        if self.peek_word(*words):
            return self.next().value.upper()
        return None

    def expect(self, *words: str) -> str:
        word = self.accept(*words)
        if word is None:
            found = self.peek().value if self.peek() else "end of statement"
            raise self.error(f"Expected {' or '.join(words)}, found {found}")
        return word

    def accept_punct(self, char: str) -> bool:
        if self.peek_punct(char):
            self.pos += 1
            return True
        return False

    def expect_punct(self, char: str) -> None:
        if not self.accept_punct(char):
            found = self.peek().value if self.peek() else "end of statement"
            raise self.error(f"Expected '{char}', found {found}")

    def expect_word(self) -> str:
        token = self.next()
        if token.kind != WORD:
            raise self.error(f"Expected keyword, found {token.value}")
        return token.value.upper()

    def identifier(self) -> str:
        token = self.next()
        if token.kind not in (WORD, IDENT):
            raise self.error(f"Expected identifier, found {token.value}")
        return token.value

    def qualified_name(self) -> str:
        """Table name, dropping any schema qualifier."""
        name = self.identifier()
        while self.accept_punct("."):
            name = self.identifier()
        return name

    def string(self) -> str:
        token = self.next()
        if token.kind != STRING:
            raise self.error(f"Expected string literal, found {token.value}")
        return token.value

    def integer(self) -> int:
        token = self.next()
        if token.kind != NUMBER or not token.value.isdigit():
            raise self.error(f"Expected integer, found {token.value}")
        return int(token.value)

    def value(self) -> str:
        token = self.next()
        if token.kind not in (WORD, IDENT, STRING, NUMBER):
            raise self.error(f"Expected value, found {token.value}")
        return token.value

    def read_balanced(self) -> List[Token]:
        """Tokens between a '(' at the cursor and its matching ')'."""
        self.expect_punct("(")
        depth = 1
        inner = []
        while True:
            token = self.next()
            if token.is_punct("("):
                depth += 1
            elif token.is_punct(")"):
                depth -= 1
                if depth == 0:
                    return inner
            inner.append(token)

    def at_definition_end(self) -> bool:
        token = self.peek()
        return token is None or token.is_punct(",") or token.is_punct(")")

    def skip_to_definition_end(self) -> None:
        while not self.at_definition_end():
            if self.peek_punct("("):
                self.read_balanced()
            else:
                self.next()


def parse_schema(sql: Optional[str]) -> SchemaSnapshot:
    """
    Build a SchemaSnapshot from a DDL script.

    Raises:
        SchemaParseError: carrying the offending statement.
    """
    snapshot = SchemaSnapshot()
    if not sql:
        return snapshot
    applied = 0
    for statement in split_statements(sql):
        if apply_statement(snapshot, statement):
            applied += 1
    log_message(f"[SQLDIFF] Parsed {len(snapshot)} table(s) from {applied} DDL statement(s)", "DEBUG")
    return snapshot


def apply_statement(snapshot: SchemaSnapshot, statement: str) -> bool:
    """Fold one statement into snapshot; False when it does not shape the schema."""
    try:
        ts = _TokenStream(tokenize(statement), statement)
        if ts.accept("CREATE"):
            if ts.accept("TEMPORARY"):
                return False
            if ts.accept("TABLE"):
                _create_table(ts, snapshot)
                return True
            modifier = ts.accept("UNIQUE", "FULLTEXT", "SPATIAL")
            if ts.accept("INDEX"):
                _create_index(ts, snapshot, modifier)
                return True
            return False
        if ts.accept("ALTER"):
            ts.accept("ONLINE")
            ts.accept("IGNORE")
            if ts.accept("TABLE"):
                _alter_table(ts, snapshot)
                return True
            return False
        if ts.accept("DROP"):
            if ts.accept("TEMPORARY"):
                return False
            if ts.accept("TABLE", "TABLES"):
                _drop_tables(ts, snapshot)
                return True
            if ts.accept("INDEX"):
                _drop_index(ts, snapshot)
                return True
            return False
        if ts.accept("RENAME") and ts.accept("TABLE", "TABLES"):
            _rename_tables(ts, snapshot)
            return True
        return False
    except SchemaParseError as e:
        if e.statement is None:
            raise SchemaParseError(e.message, statement) from e
        raise


def _accept_if_exists(ts: _TokenStream, negated: bool) -> bool:
    if not ts.accept("IF"):
        return False
    if negated:
        ts.expect("NOT")
    ts.expect("EXISTS")
    return True


def _create_table(ts: _TokenStream, snapshot: SchemaSnapshot) -> None:
    if_not_exists = _accept_if_exists(ts, negated=True)
    name = ts.qualified_name()
    if name in snapshot and if_not_exists:
        log_message(f"[SQLDIFF] Table {name} already defined, CREATE TABLE IF NOT EXISTS skipped", "DEBUG")
        return

    wrapped_like = ts.peek_punct("(") and ts.peek(1) is not None and ts.peek(1).is_word("LIKE")
    if wrapped_like or ts.peek_word("LIKE"):
        ts.accept_punct("(")
        ts.expect("LIKE")
        source_name = ts.qualified_name()
        if wrapped_like:
            ts.expect_punct(")")
        source = snapshot.get(source_name)
        if source is None:
            raise ts.error(f"CREATE TABLE LIKE references unknown table {source_name}")
        table = copy.deepcopy(source)
        table.name = name
        snapshot.add(table)
        return

    table = TableDefinition(name=name)
    pending: List[_IndexSpec] = []
    ts.expect_punct("(")
    while True:
        _parse_create_definition(ts, table, pending)
        if ts.accept_punct(","):
            continue
        ts.expect_punct(")")
        break

    if not table.columns:
        raise ts.error(f"Table {name} defines no columns")
    _add_indexes(table, pending)
    _parse_table_options(ts, table)
    snapshot.add(table)


def _parse_create_definition(ts: _TokenStream, table: TableDefinition, pending: List[_IndexSpec]) -> None:
    symbol = None
    if ts.accept("CONSTRAINT"):
        if not ts.peek_word("PRIMARY", "UNIQUE", "FOREIGN", "CHECK"):
            symbol = ts.identifier()
    if ts.peek_word("FOREIGN", "CHECK"):
        ts.skip_to_definition_end()
        return
    if ts.peek_word("PRIMARY", "UNIQUE", "INDEX", "KEY", "FULLTEXT", "SPATIAL"):
        pending.append(_parse_index_definition(ts, symbol))
        return
    if symbol is not None:
        raise ts.error(f"Unsupported constraint {symbol}")

    column, specs = _parse_column_definition(ts)
    table.add_column(column)
    pending.extend(specs)


def _optional_index_name(ts: _TokenStream) -> Optional[str]:
    token = ts.peek()
    if token is None or token.kind not in (WORD, IDENT) or token.is_word("USING"):
        return None
    return ts.identifier()


def _parse_index_definition(ts: _TokenStream, symbol: Optional[str] = None) -> _IndexSpec:
    word = ts.expect_word()
    if word == "PRIMARY":
        ts.expect("KEY")
        kind, name = IndexKind.PRIMARY, "PRIMARY"
    elif word == "UNIQUE":
        ts.accept("INDEX", "KEY")
        kind, name = IndexKind.UNIQUE, _optional_index_name(ts) or symbol
    elif word in ("FULLTEXT", "SPATIAL"):
        ts.accept("INDEX", "KEY")
        kind, name = _INDEX_KINDS[word], _optional_index_name(ts)
    else:
        kind, name = IndexKind.INDEX, _optional_index_name(ts)

    using = ts.expect_word() if ts.accept("USING") else None
    columns = _parse_index_columns(ts)
    using = _parse_index_options(ts) or using
    return _IndexSpec(kind, name, columns, using)


def _parse_index_columns(ts: _TokenStream) -> Tuple[IndexColumn, ...]:
    ts.expect_punct("(")
    columns = []
    if ts.peek_punct(")"):
        raise ts.error("Index has an empty column list")
    while True:
        if ts.peek_punct("("):
            expression = render_tokens(ts.read_balanced())
            column = IndexColumn(name="", expression=expression)
        else:
            name = ts.identifier()
            length = None
            if ts.accept_punct("("):
                length = ts.integer()
                ts.expect_punct(")")
            column = IndexColumn(name=name, length=length)
        if ts.accept("DESC"):
            column = replace(column, descending=True)
        else:
            ts.accept("ASC")
        columns.append(column)
        if ts.accept_punct(","):
            continue
        ts.expect_punct(")")
        return tuple(columns)


def _parse_index_options(ts: _TokenStream) -> Optional[str]:
    using = None
    while not ts.at_definition_end():
        if ts.accept("USING"):
            using = ts.expect_word()
        elif ts.accept("COMMENT"):
            ts.string()
        elif ts.accept("KEY_BLOCK_SIZE", "ALGORITHM", "LOCK"):
            ts.accept_punct("=")
            ts.next()
        elif ts.accept("VISIBLE", "INVISIBLE"):
            pass
        elif ts.accept("WITH"):
            ts.expect("PARSER")
            ts.identifier()
        else:
            raise ts.error(f"Unexpected token in index definition: {ts.peek().value}")
    return using


def _parse_data_type(ts: _TokenStream) -> ColumnType:
    token = ts.next()
    if token.kind != WORD:
        raise ts.error(f"Expected column type, found {token.value}")
    name = token.value.upper()
    if name == "NATIONAL":
        name = ts.expect_word()
    if name == "DOUBLE":
        ts.accept("PRECISION")
    if name in ("CHARACTER", "CHAR") and ts.accept("VARYING"):
        name = "VARCHAR"
    if name == "LONG":
        name = "MEDIUMBLOB" if ts.accept("VARBINARY") else "MEDIUMTEXT"
        ts.accept("VARCHAR")

    length = scale = None
    if name in ("BOOL", "BOOLEAN"):
        name, length = "TINYINT", 1
    name = TYPE_ALIASES.get(name, name)
    if name not in KNOWN_TYPES:
        raise ts.error(f"Unknown column type {token.value}")

    values: Tuple[str, ...] = ()
    if ts.accept_punct("("):
        if name in VALUE_LIST_TYPES:
            items = []
            while True:
                items.append(ts.string())
                if ts.accept_punct(","):
                    continue
                ts.expect_punct(")")
                break
            values = tuple(items)
        else:
            length = ts.integer()
            if ts.accept_punct(","):
                scale = ts.integer()
            ts.expect_punct(")")
    elif name in VALUE_LIST_TYPES:
        raise ts.error(f"{name} column requires a value list")

    unsigned = zerofill = False
    charset = collate = None
    while True:
        if ts.accept("UNSIGNED"):
            unsigned = True
        elif ts.accept("SIGNED"):
            pass
        elif ts.accept("ZEROFILL"):
            zerofill = unsigned = True
        elif ts.accept("BINARY"):
            pass
        elif ts.accept("CHARACTER"):
            ts.expect("SET")
            charset = ts.value()
        elif ts.accept("CHARSET"):
            charset = ts.value()
        elif ts.accept("COLLATE"):
            collate = ts.value()
        else:
            break

    return ColumnType(
        name=name,
        length=length,
        scale=scale,
        values=values,
        unsigned=unsigned,
        zerofill=zerofill,
        charset=charset,
        collate=collate,
    )


def _parse_default(ts: _TokenStream) -> str:
    """Render a DEFAULT / ON UPDATE expression canonically."""
    token = ts.next()
    if token.kind == STRING:
        return quote_string(token.value)
    if token.kind in (NUMBER, LITERAL):
        return token.value
    if token.kind == PUNCT:
        if token.value in "+-":
            number = ts.next()
            if number.kind != NUMBER:
                raise ts.error(f"Expected number after {token.value}")
            return ("-" if token.value == "-" else "") + number.value
        if token.value == "(":
            ts.pos -= 1
            return "(" + render_tokens(ts.read_balanced()) + ")"
        raise ts.error(f"Unexpected default value {token.value}")
    if token.kind == IDENT:
        raise ts.error(f"Unexpected identifier {token.value} in default value")

    word = token.value.upper()
    if word in DATETIME_FUNCTIONS:
        canonical = DATETIME_FUNCTIONS[word]
        if ts.peek_punct("("):
            inner = ts.read_balanced()
            if inner:
                return f"{canonical}({render_tokens(inner)})"
        return canonical
    if ts.peek_punct("("):
        return f"{word}({render_tokens(ts.read_balanced())})"
    return word


def _parse_generated(ts: _TokenStream) -> str:
    expression = render_tokens(ts.read_balanced())
    storage = ts.accept("VIRTUAL", "STORED", "PERSISTENT") or "VIRTUAL"
    if storage == "PERSISTENT":
        storage = "STORED"
    return f"GENERATED ALWAYS AS ({expression}) {storage}"


def _normalise_default(column: ColumnDefinition) -> None:
    default = column.default
    if default is None:
        return
    if default == "NULL" and column.nullable:
        column.default = None
        return
    if column.type.is_numeric:
        if default in ("TRUE", "FALSE"):
            column.default = "1" if default == "TRUE" else "0"
            return
        match = _QUOTED_NUMBER.match(default)
        if match:
            column.default = match.group(1)


def _parse_column_definition(ts: _TokenStream) -> Tuple[ColumnDefinition, List[_IndexSpec]]:
    name = ts.identifier()
    column_type = _parse_data_type(ts)
    column = ColumnDefinition(name=name, type=column_type)
    specs: List[_IndexSpec] = []
    charset, collate = column_type.charset, column_type.collate

    while not ts.at_definition_end() and not ts.peek_word("FIRST", "AFTER"):
        word = ts.expect_word()
        if word == "NOT":
            ts.expect("NULL")
            column.nullable = False
        elif word == "NULL":
            column.nullable = True
        elif word == "DEFAULT":
            column.default = _parse_default(ts)
        elif word == "AUTO_INCREMENT":
            column.auto_increment = True
        elif word == "ON":
            ts.expect("UPDATE")
            column.on_update = _parse_default(ts)
        elif word == "COMMENT":
            column.comment = ts.string()
        elif word in ("PRIMARY", "KEY"):
            if word == "PRIMARY":
                ts.expect("KEY")
            specs.append(_IndexSpec(IndexKind.PRIMARY, "PRIMARY", (IndexColumn(name),), None))
        elif word == "UNIQUE":
            ts.accept("KEY", "INDEX")
            specs.append(_IndexSpec(IndexKind.UNIQUE, None, (IndexColumn(name),), None))
        elif word == "CHARACTER":
            ts.expect("SET")
            charset = ts.value()
        elif word == "CHARSET":
            charset = ts.value()
        elif word == "COLLATE":
            collate = ts.value()
        elif word == "GENERATED":
            ts.expect("ALWAYS")
            ts.expect("AS")
            column.generated = _parse_generated(ts)
        elif word == "AS":
            column.generated = _parse_generated(ts)
        elif word in ("VISIBLE", "INVISIBLE"):
            pass
        elif word in ("COLUMN_FORMAT", "STORAGE", "SRID"):
            ts.next()
        elif word == "REFERENCES":
            while not ts.at_definition_end() and not ts.peek_word("FIRST", "AFTER"):
                if ts.peek_punct("("):
                    ts.read_balanced()
                else:
                    ts.next()
        elif word == "CONSTRAINT":
            if not ts.peek_word("CHECK"):
                ts.identifier()
        elif word == "CHECK":
            ts.read_balanced()
            ts.accept("NOT")
            ts.accept("ENFORCED")
        else:
            raise ts.error(f"Unexpected attribute {word} for column {name}")

    column.type = replace(column.type, charset=charset, collate=collate)
    if any(spec.kind is IndexKind.PRIMARY for spec in specs):
        column.nullable = False
    _normalise_default(column)
    return column, specs


def _parse_position(ts: _TokenStream) -> Tuple[bool, Optional[str]]:
    if ts.accept("FIRST"):
        return True, None
    if ts.accept("AFTER"):
        return False, ts.identifier()
    return False, None


def _add_indexes(table: TableDefinition, specs: List[_IndexSpec]) -> None:
    for spec in specs:
        name = spec.name
        if spec.kind is IndexKind.PRIMARY:
            name = "PRIMARY"
        elif name is None:
            name = table.generated_index_name(spec.columns[0].name or "functional_index")
        table.add_index(IndexDefinition(name=name, kind=spec.kind, columns=spec.columns, using=spec.using))


def _keep_primary_not_null(table: TableDefinition, column: ColumnDefinition) -> None:
    if table.primary_key is not None and table.primary_key.covers(column.key):
        column.nullable = False


def _parse_table_options(ts: _TokenStream, table: TableDefinition) -> None:
    while not ts.at_end():
        if ts.accept_punct(","):
            continue
        if ts.peek_word("PARTITION", "AS", "SELECT", "IGNORE", "REPLACE"):
            # partitioning and CREATE ... SELECT do not change the column layout
            ts.pos = len(ts.tokens)
            return
        _parse_table_option(ts, table)


def _parse_table_option(ts: _TokenStream, table: TableDefinition) -> None:
    ts.accept("DEFAULT")
    word = ts.expect_word()
    if word == "CHARACTER":
        ts.expect("SET")
        word = "CHARSET"
    ts.accept_punct("=")
    if ts.peek_punct("("):
        ts.read_balanced()
        return
    value = ts.value()
    if word == "ENGINE":
        table.engine = value
    elif word == "CHARSET":
        table.charset = value
    elif word == "COLLATE":
        table.collate = value
    elif word == "COMMENT":
        table.comment = value


def _table_or_error(ts: _TokenStream, snapshot: SchemaSnapshot, name: str, action: str) -> TableDefinition:
    table = snapshot.get(name)
    if table is None:
        raise ts.error(f"{action} on unknown table {name}")
    return table


def _alter_table(ts: _TokenStream, snapshot: SchemaSnapshot) -> None:
    table = _table_or_error(ts, snapshot, ts.qualified_name(), "ALTER TABLE")
    while not ts.at_end():
        _parse_alter_clause(ts, snapshot, table)
        if ts.at_end():
            break
        ts.expect_punct(",")


def _parse_alter_clause(ts: _TokenStream, snapshot: SchemaSnapshot, table: TableDefinition) -> None:
    if ts.accept("ADD"):
        explicit_column = ts.accept("COLUMN") is not None
        if explicit_column or not ts.peek_word(*INDEX_START_WORDS):
            if ts.accept_punct("("):
                while True:
                    column, specs = _parse_column_definition(ts)
                    table.add_column(column)
                    _add_indexes(table, specs)
                    if ts.accept_punct(","):
                        continue
                    ts.expect_punct(")")
                    return
            column, specs = _parse_column_definition(ts)
            first, after = _parse_position(ts)
            table.add_column(column, first=first, after=after)
            _add_indexes(table, specs)
            return
        symbol = None
        if ts.accept("CONSTRAINT"):
            if not ts.peek_word("PRIMARY", "UNIQUE", "FOREIGN", "CHECK"):
                symbol = ts.identifier()
        if ts.peek_word("FOREIGN", "CHECK"):
            ts.skip_to_definition_end()
            return
        _add_indexes(table, [_parse_index_definition(ts, symbol)])
        return

    if ts.accept("DROP"):
        if ts.accept("PRIMARY"):
            ts.expect("KEY")
            table.drop_primary_key()
        elif ts.accept("INDEX", "KEY"):
            table.drop_index(ts.identifier())
        elif ts.accept("FOREIGN"):
            ts.expect("KEY")
            ts.identifier()
        elif ts.accept("CHECK", "CONSTRAINT"):
            ts.identifier()
        else:
            ts.accept("COLUMN")
            if_exists = _accept_if_exists(ts, negated=False)
            name = ts.identifier()
            if table.column(name) is None and if_exists:
                return
            table.drop_column(name)
        return

    if ts.accept("MODIFY"):
        ts.accept("COLUMN")
        column, specs = _parse_column_definition(ts)
        first, after = _parse_position(ts)
        table.replace_column(column.name, column, first=first, after=after)
        _keep_primary_not_null(table, column)
        _add_indexes(table, specs)
        return

    if ts.accept("CHANGE"):
        ts.accept("COLUMN")
        old_name = ts.identifier()
        column, specs = _parse_column_definition(ts)
        first, after = _parse_position(ts)
        table.replace_column(old_name, column, first=first, after=after)
        _keep_primary_not_null(table, column)
        _add_indexes(table, specs)
        return

    if ts.accept("RENAME"):
        if ts.accept("COLUMN"):
            old_name = ts.identifier()
            ts.expect("TO")
            new_name = ts.identifier()
            column = table.column(old_name)
            if column is None:
                raise ts.error(f"Unknown column {old_name} in table {table.name}")
            table.replace_column(old_name, replace(column, name=new_name))
        elif ts.accept("INDEX", "KEY"):
            old_name = ts.identifier()
            ts.expect("TO")
            table.rename_index(old_name, ts.identifier())
        else:
            ts.accept("TO", "AS")
            snapshot.rename(table.name, ts.qualified_name())
        return

    if ts.accept("ALTER"):
        ts.accept("COLUMN")
        name = ts.identifier()
        column = table.column(name)
        if column is None:
            raise ts.error(f"Unknown column {name} in table {table.name}")
        if ts.accept("SET"):
            if ts.accept("DEFAULT"):
                column.default = _parse_default(ts)
                _normalise_default(column)
            else:
                ts.expect("VISIBLE", "INVISIBLE")
        else:
            ts.expect("DROP")
            ts.expect("DEFAULT")
            column.default = None
        return

    if ts.peek_word(*TABLE_OPTION_WORDS):
        _parse_table_option(ts, table)
        return

    if ts.accept(*IGNORED_ALTER_WORDS):
        ts.skip_to_definition_end()
        return

    found = ts.peek().value if ts.peek() else "end of statement"
    raise ts.error(f"Unsupported ALTER TABLE clause starting at {found}")


def _create_index(ts: _TokenStream, snapshot: SchemaSnapshot, modifier: Optional[str]) -> None:
    name = ts.identifier()
    using = ts.expect_word() if ts.accept("USING") else None
    ts.expect("ON")
    table = _table_or_error(ts, snapshot, ts.qualified_name(), "CREATE INDEX")
    columns = _parse_index_columns(ts)
    using = _parse_index_options(ts) or using
    if not ts.at_end():
        raise ts.error(f"Unexpected token after index definition: {ts.peek().value}")
    table.add_index(IndexDefinition(name=name, kind=_INDEX_KINDS[modifier], columns=columns, using=using))


def _drop_index(ts: _TokenStream, snapshot: SchemaSnapshot) -> None:
    name = ts.identifier()
    ts.expect("ON")
    table = _table_or_error(ts, snapshot, ts.qualified_name(), "DROP INDEX")
    table.drop_index(name)


def _drop_tables(ts: _TokenStream, snapshot: SchemaSnapshot) -> None:
    _accept_if_exists(ts, negated=False)
    while True:
        snapshot.remove(ts.qualified_name())
        if not ts.accept_punct(","):
            break
    ts.accept("RESTRICT", "CASCADE")


def _rename_tables(ts: _TokenStream, snapshot: SchemaSnapshot) -> None:
    while True:
        old_name = ts.qualified_name()
        ts.expect("TO")
        snapshot.rename(old_name, ts.qualified_name())
        if not ts.accept_punct(","):
            break
