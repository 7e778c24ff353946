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

import re
import datetime
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import dotenv_values
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from upgrades.utils.index import log_message
from upgrades.modules.sqldiff.parser import split_statements
from upgrades.modules.sqldiff.schema import SchemaParseError

MYSQL_SERVICE = "mysql"
MYSQL_CONTAINER_PORT = 3306
DEFAULT_HOST = "127.0.0.1"
DEFAULT_USER = "root"
DEFAULT_PASSWORD = "root"
DEFAULT_DATABASE = "agent_platform"
DEFAULT_DRIVER = "mysql+pymysql"

# dialects whose DDL can be rolled back with the surrounding transaction
TRANSACTIONAL_DDL_DIALECTS = frozenset({"postgresql", "mssql"})

_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class MigrationError(Exception):
    """Custom exception for migration operation failures."""

    def __init__(self, message: str, statement: Optional[str] = None, index: Optional[int] = None,
                 cause: Optional[BaseException] = None, committed: bool = False):
        super().__init__(message)
        self.statement = statement
        self.index = index
        self.cause = cause
        self.committed = committed


def _load_env_file(env_file: Union[str, Path]) -> Dict[str, str]:
    """Read KEY=VALUE pairs from a compose .env file."""
    values = {}
    path = Path(env_file)
    if not path.exists():
        log_message(f"[MIGRATE] Env file not found: {path}", "WARNING")
        return values
    for key, value in dotenv_values(path, encoding="utf-8").items():
        values[key] = "" if value is None else value
    return values


def _substitute(value: Any, variables: Dict[str, str]) -> str:
    """Expand ${VAR}, ${VAR:-default} and $VAR the way compose does."""
    def expand(match):
        name = match.group(1) or match.group(3)
        default = match.group(2)
        resolved = variables.get(name)
        if resolved in (None, "") and default is not None:
            return default
        return resolved or ""

    return _VARIABLE.sub(expand, str(value))


def _service_environment(service: Dict[str, Any], variables: Dict[str, str]) -> Dict[str, str]:
    environment = service.get("environment") or {}
    resolved = {}
    if isinstance(environment, dict):
        for key, value in environment.items():
            resolved[key] = "" if value is None else _substitute(value, variables)
    else:
        for item in environment:
            item = str(item)
            if "=" in item:
                key, value = item.split("=", 1)
                resolved[key] = _substitute(value, variables)
            elif item in variables:
                resolved[item] = variables[item]
    return resolved


def _published_port(ports: Any, variables: Dict[str, str]) -> Optional[int]:
    """Host port mapped to the MySQL container port, from short or long syntax."""
    for entry in ports or []:
        if isinstance(entry, dict):
            if str(entry.get("target")) != str(MYSQL_CONTAINER_PORT):
                continue
            published = entry.get("published")
            if published is None:
                continue
            published = _substitute(published, variables)
        else:
            mapping = _substitute(entry, variables).split("/", 1)[0]
            parts = mapping.split(":")
            if len(parts) < 2 or parts[-1] != str(MYSQL_CONTAINER_PORT):
                continue
            published = parts[-2]
        try:
            return int(published.split("-", 1)[0])
        except ValueError:
            log_message(f"[MIGRATE] Ignoring unparsable port mapping {entry!r}", "WARNING")
    return None


@dataclass
class DatabaseConfig:
    """Connection settings for the stack's MySQL service."""
    host: str = DEFAULT_HOST
    port: int = MYSQL_CONTAINER_PORT
    user: str = DEFAULT_USER
    password: str = DEFAULT_PASSWORD
    database: str = DEFAULT_DATABASE
    driver: str = DEFAULT_DRIVER

    @classmethod
    def from_compose(cls, compose_file: Union[str, Path], env_file: Optional[Union[str, Path]] = None,
                     service_name: str = MYSQL_SERVICE) -> "DatabaseConfig":
        """
        Derive the connection from the mysql service of a compose file.

        Credentials come from MYSQL_USER / MYSQL_PASSWORD / MYSQL_DATABASE in
        the service environment (after .env substitution); the port is the
        host side of the mapping onto container port 3306.

        Raises:
            MigrationError: If the file cannot be read or lacks the service or port
        """
        try:
            with open(compose_file, 'r', encoding='utf-8') as f:
                compose = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise MigrationError(f"Cannot read compose file {compose_file}: {e}", cause=e) from e

        variables = _load_env_file(env_file) if env_file else {}
        services = compose.get("services") or {}
        service = services.get(service_name)
        if not isinstance(service, dict):
            raise MigrationError(f"Service '{service_name}' not found in {compose_file}")

        port = _published_port(service.get("ports"), variables)
        if port is None:
            raise MigrationError(
                f"No host port mapped to {MYSQL_CONTAINER_PORT} for service '{service_name}' in {compose_file}"
            )

        environment = _service_environment(service, variables)
        config = cls(
            port=port,
            user=environment.get("MYSQL_USER") or DEFAULT_USER,
            password=environment.get("MYSQL_PASSWORD") or DEFAULT_PASSWORD,
            database=environment.get("MYSQL_DATABASE") or DEFAULT_DATABASE,
        )
        log_message(f"[MIGRATE] Database config from compose: {config.user}@{config.host}:{config.port}/{config.database}")
        return config

    def to_url(self) -> URL:
        return URL.create(
            self.driver,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )


def _preview(statement: str, limit: int = 120) -> str:
    single_line = " ".join(statement.split())
    if len(single_line) <= limit:
        return single_line
    return single_line[:limit - 3] + "..."


class MigrationRunner:
    """Executes generated schema diff scripts against the stack database."""

    def __init__(self, engine: Union[Engine, URL, str], log_file: Optional[Union[str, Path]] = None):
        if isinstance(engine, (str, URL)):
            engine = create_engine(engine, pool_pre_ping=True)
        self.engine = engine
        self.log_file = Path(log_file) if log_file else None

        if self.log_file is not None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self.log_file.touch(exist_ok=True)

    @classmethod
    def from_config(cls, config: DatabaseConfig, log_file: Optional[Union[str, Path]] = None) -> "MigrationRunner":
        return cls(config.to_url(), log_file=log_file)

    @property
    def transactional_ddl(self) -> bool:
        return self.engine.dialect.name in TRANSACTIONAL_DDL_DIALECTS

    def _log_migration(self, message: str, level: str = "INFO"):
        """Log message to both unified system logger and migration-specific log file."""
        log_message(f"[MIGRATE] {message}", level)

        if self.log_file is None:
            return
        try:
            timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(f"[{timestamp}] [{level}] {message}\n")
        except OSError:
            # the unified log already has the entry
            pass

    def test_connection(self) -> bool:
        """Run SELECT 1 against the database."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self._log_migration("✓ Database connection OK")
            return True
        except SQLAlchemyError as e:
            self._log_migration(f"✗ Database connection failed: {e}", "ERROR")
            return False

    def execute_diff_sql(self, script: str) -> List[str]:
        """
        Run a diff script statement by statement in one transaction.

        Args:
            script: SQL text; comments and blank lines are ignored

        Returns:
            list: The statements that were executed, in order

        Raises:
            MigrationError: On the first failing statement. ``committed`` is
                set when earlier statements already persisted because the
                engine commits DDL implicitly.
        """
        try:
            statements = split_statements(script or "")
        except SchemaParseError as e:
            raise MigrationError(f"Cannot split migration script: {e.message}",
                                 statement=e.statement, cause=e) from e

        if not statements:
            self._log_migration("No statements to execute")
            return []

        total = len(statements)
        executed: List[str] = []
        self._log_migration(f"Executing {total} migration statement(s)")
        self._log_migration("=" * 60)

        try:
            with self.engine.begin() as conn:
                for index, statement in enumerate(statements, 1):
                    try:
                        conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
                    except SQLAlchemyError as e:
                        raise MigrationError(
                            f"Statement {index}/{total} failed: {e}",
                            statement=statement,
                            index=index,
                            cause=e,
                            committed=bool(executed) and not self.transactional_ddl,
                        ) from e
                    executed.append(statement)
                    self._log_migration(f"[{index}/{total}] ✓ {_preview(statement)}")
        except MigrationError as e:
            self._log_migration(f"✗ {e}", "ERROR")
            if e.committed:
                self._log_migration(
                    f"{len(executed)} statement(s) before the failure were committed by the server; "
                    f"the schema is partially migrated",
                    "WARNING",
                )
            self._log_migration("=" * 60)
            raise
        except SQLAlchemyError as e:
            self._log_migration(f"✗ Migration transaction failed: {e}", "ERROR")
            self._log_migration("=" * 60)
            raise MigrationError(f"Migration transaction failed: {e}", cause=e,
                                 committed=bool(executed) and not self.transactional_ddl) from e

        self._log_migration(f"✓ Executed {len(executed)} statement(s)")
        self._log_migration("=" * 60)
        return executed
