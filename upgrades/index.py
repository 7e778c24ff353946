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
import sys
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.engine import Engine

from upgrades.utils.index import log_message, load_index
from upgrades.utils.architecture import Architecture
from upgrades.utils.version import Version, VersionError
from upgrades.utils.downloader import DownloadResult, download_file
from upgrades.modules.strategy import (
    ManifestError,
    NoUpgrade,
    PackageRef,
    PatchUpgrade,
    ServiceManifest,
    UpgradeStrategy,
    UpgradeStrategyManager,
)
from upgrades.modules.patch import PatchExecutor, PatchExecutorError, PatchProcessor
from upgrades.modules.patch.index import DEFAULT_PRESERVED
from upgrades.modules.sqldiff import SchemaParseError, generate_schema_diff, write_diff_sql
from upgrades.modules.migrations import DatabaseConfig, MigrationError, MigrationRunner

# Configuration
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_ENV_FILE = ".env"
DEFAULT_SCHEMA_FILE = "config/init_mysql.sql"
DEFAULT_BACKUP_DIRNAME = "backups"
DEFAULT_DOWNLOAD_DIRNAME = "downloads"
DEFAULT_PROJECT_NAME = "stack"
PENDING_DIFF_NAME = "diff_sql_pending.sql"
OLD_SCHEMA_NAME = "init_mysql_old.sql"

Downloader = Callable[[str, Path], DownloadResult]


def setup_upgrade_logging(level: int = logging.INFO):
    """
    Log to stdout only; the shell wrapper owns file truncation/redirection.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("="*80)
    logging.info("COMPOSE STACK UPGRADE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info(f"Python Version: {sys.version}")
    logging.info("="*80)


class UpgradeError(Exception):
    """Custom exception for upgrade configuration failures."""
    pass


def _optional_path(value, base: Path) -> Optional[Path]:
    if value in (None, ""):
        return None
    path = Path(value)
    return path if path.is_absolute() else base / path


@dataclass
class UpgradeContext:
    """
    Everything one upgrade attempt needs to know about the deployment.

    Relative compose/env paths resolve against work_dir; backups and
    downloads default to siblings of work_dir so they never live inside
    the managed root.
    """
    work_dir: Path
    compose_file: Path = Path(DEFAULT_COMPOSE_FILE)
    project_name: str = DEFAULT_PROJECT_NAME
    env_file: Optional[Path] = None
    backup_dir: Optional[Path] = None
    download_dir: Optional[Path] = None
    public_key: Optional[Path] = None
    schema_file: str = DEFAULT_SCHEMA_FILE
    diff_output: Optional[Path] = None
    database_url: Optional[str] = None
    database_from_compose: bool = False
    migration_log: Optional[Path] = None
    architecture: Optional[Architecture] = None
    preserve: Tuple[str, ...] = DEFAULT_PRESERVED

    def __post_init__(self):
        self.work_dir = Path(self.work_dir)
        self.compose_file = _optional_path(self.compose_file, self.work_dir) or self.work_dir / DEFAULT_COMPOSE_FILE
        self.env_file = _optional_path(self.env_file, self.work_dir) or self.compose_file.parent / DEFAULT_ENV_FILE
        parent = self.work_dir.parent
        self.backup_dir = _optional_path(self.backup_dir, parent) or parent / DEFAULT_BACKUP_DIRNAME
        self.download_dir = _optional_path(self.download_dir, parent) or parent / DEFAULT_DOWNLOAD_DIRNAME
        self.public_key = _optional_path(self.public_key, self.work_dir)
        self.diff_output = _optional_path(self.diff_output, parent)
        self.migration_log = _optional_path(self.migration_log, parent)
        if isinstance(self.architecture, str):
            parsed = Architecture.parse(self.architecture)
            if parsed is None:
                raise UpgradeError(f"Unsupported architecture: {self.architecture}")
            self.architecture = parsed
        self.preserve = tuple(self.preserve)

    @property
    def schema_path(self) -> Path:
        return self.work_dir / self.schema_file

    @property
    def pending_diff_path(self) -> Path:
        """Diff script written before execution and renamed once it has run."""
        return self.download_dir / PENDING_DIFF_NAME

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Union[str, Path]] = None) -> "UpgradeContext":
        """Build a context from a config mapping; relative work_dir resolves against base_dir."""
        if not data.get("work_dir"):
            raise UpgradeError("Upgrade config is missing 'work_dir'")
        known = {
            "compose_file", "project_name", "env_file", "backup_dir", "download_dir",
            "public_key", "schema_file", "diff_output", "database_url",
            "database_from_compose", "migration_log", "architecture", "preserve",
        }
        unknown = sorted(set(data) - known - {"work_dir"})
        if unknown:
            log_message(f"Ignoring unknown upgrade config keys: {', '.join(unknown)}", "WARNING")
        work_dir = Path(data["work_dir"])
        if base_dir is not None and not work_dir.is_absolute():
            work_dir = Path(base_dir) / work_dir
        kwargs = {key: data[key] for key in known if key in data}
        return cls(work_dir=work_dir, **kwargs)

    @classmethod
    def from_index(cls, index_path: Union[str, Path]) -> "UpgradeContext":
        """Load the "config" block of an index.json."""
        data = load_index(index_path)
        if not data:
            raise UpgradeError(f"Cannot load upgrade config from {index_path}")
        config = data.get("config")
        if not isinstance(config, dict):
            raise UpgradeError(f"No 'config' block in {index_path}")
        index_path = Path(index_path)
        base_dir = index_path if index_path.is_dir() else index_path.parent
        return cls.from_dict(config, base_dir=base_dir)


def strategy_name(strategy: UpgradeStrategy) -> str:
    if isinstance(strategy, NoUpgrade):
        return "none"
    if isinstance(strategy, PatchUpgrade):
        return "patch"
    return "full"


def _read_schema(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


def _fetch(downloader: Optional[Downloader], url: str, destination: Path,
           expected_hash: Optional[str]) -> DownloadResult:
    if downloader is None:
        return download_file(url, destination, expected_hash=expected_hash)
    return downloader(url, destination)


def _migration_runner(context: UpgradeContext, engine: Optional[Engine]) -> Optional[MigrationRunner]:
    if engine is not None:
        return MigrationRunner(engine, log_file=context.migration_log)
    if context.database_url:
        return MigrationRunner(context.database_url, log_file=context.migration_log)
    if context.database_from_compose:
        config = DatabaseConfig.from_compose(context.compose_file, context.env_file)
        return MigrationRunner.from_config(config, log_file=context.migration_log)
    return None


def _snapshot_schema(context: UpgradeContext, destination: Path) -> Optional[str]:
    """Keep the deployed schema next to the download before the root is touched."""
    old_schema = _read_schema(context.schema_path)
    snapshot = destination / OLD_SCHEMA_NAME
    try:
        destination.mkdir(parents=True, exist_ok=True)
        with open(snapshot, 'w', encoding='utf-8') as f:
            f.write(old_schema or "")
    except OSError as e:
        raise UpgradeError(f"Cannot save pre-upgrade schema to {snapshot}: {e}") from e
    log_message(f"[UPGRADE] Saved pre-upgrade schema to {snapshot}")
    return old_schema


def _mark_executed(pending: Path) -> Optional[Path]:
    executed = pending.with_name(f"diff_sql_executed_{datetime.now().strftime('%Y%m%d_%H%M%S')}.sql")
    try:
        os.replace(pending, executed)
    except OSError as e:
        log_message(f"[UPGRADE] ✗ Diff ran but {pending} could not be renamed, remove it by hand: {e}", "ERROR")
        return None
    log_message(f"[UPGRADE] ✓ Executed diff kept as {executed}")
    return executed


def _resume_pending_migration(context: UpgradeContext, engine: Optional[Engine]) -> List[str]:
    """
    Run a diff an earlier attempt generated but did not finish executing.

    The managed root already carries the new schema at that point, so a
    fresh diff would come out empty and the database would never catch up.
    """
    pending = context.pending_diff_path
    if not pending.is_file():
        return []
    runner = _migration_runner(context, engine)
    if runner is None:
        log_message(f"[UPGRADE] Pending schema diff {pending} found but no database is configured", "WARNING")
        return []

    log_message(f"[UPGRADE] Executing schema diff left pending by an earlier attempt: {pending}")
    with open(pending, 'r', encoding='utf-8') as f:
        script = f.read()
    executed = runner.execute_diff_sql(script)
    _mark_executed(pending)
    return executed


def migrate_schema(context: UpgradeContext, old_schema: Optional[str], old_version: Optional[str],
                   new_version: str, engine: Optional[Engine] = None) -> Dict[str, Any]:
    """
    Diff the schema shipped before and after the upgrade and apply it.

    Returns:
        dict: schema_description, diff_file and executed_statements
    """
    result = {"schema_description": None, "diff_file": None, "executed_statements": []}
    new_schema = _read_schema(context.schema_path)
    if new_schema is None:
        log_message(f"[UPGRADE] No schema file at {context.schema_path}, skipping database migration")
        return result

    if old_schema is None:
        old_version = None
    diff_sql, description = generate_schema_diff(old_schema, new_schema, old_version, new_version)
    result["schema_description"] = description

    if context.diff_output is not None:
        result["diff_file"] = str(write_diff_sql(context.diff_output, diff_sql, description, old_version, new_version))

    if not diff_sql:
        log_message("[UPGRADE] ✓ Database schema unchanged")
        return result

    runner = _migration_runner(context, engine)
    if runner is None:
        log_message("[UPGRADE] No database configured; schema diff generated but not executed", "WARNING")
        return result

    pending = write_diff_sql(context.pending_diff_path, diff_sql, description, old_version, new_version)
    result["executed_statements"] = runner.execute_diff_sql(diff_sql)
    _mark_executed(pending)
    return result


def run_upgrade(
    context: UpgradeContext,
    manifest: ServiceManifest,
    current_version: Union[str, Version],
    force_full: bool = False,
    downloader: Optional[Downloader] = None,
    engine: Optional[Engine] = None,
    progress: Optional[Callable[[float], None]] = None,
) -> Dict[str, Any]:
    """
    Run one upgrade attempt end to end.

    Args:
        context: Deployment description
        manifest: Release manifest from the update server
        current_version: Version currently deployed
        force_full: Reinstall the full package even when a patch applies
        downloader: Callable (url, destination_dir) -> DownloadResult
        engine: SQLAlchemy engine for the schema migration

    Returns:
        dict: success, strategy, target_version, message, error, recoverable
    """
    result: Dict[str, Any] = {
        "success": False,
        "strategy": None,
        "target_version": str(manifest.version),
        "message": "",
        "error": None,
        "recoverable": None,
        "files_applied": False,
    }

    log_message("*" * 60)
    log_message(f"[UPGRADE] Upgrading {context.project_name} in {context.work_dir}")

    try:
        current = Version.parse(current_version)
        strategy = UpgradeStrategyManager(context).determine_strategy(current, force_full, manifest)
        result["strategy"] = strategy_name(strategy)
        result["changed_files"] = strategy.changed_files()
        recovered = _resume_pending_migration(context, engine)
        result["executed_statements"] = recovered

        if isinstance(strategy, NoUpgrade):
            result["success"] = True
            result["message"] = f"Already up to date at {current}"
            return result

        target = strategy.target_version
        destination = context.download_dir / target.base_version_string()
        old_schema = _snapshot_schema(context, destination)
        executor = PatchExecutor(
            context.work_dir,
            backup_root=context.backup_dir,
            processor=PatchProcessor.with_public_key(context.public_key),
        )

        if isinstance(strategy, PatchUpgrade):
            patch = strategy.patch_info
            log_message(f"[UPGRADE] Patch plan: {executor.operation_summary(patch.operations)}")
            fetched = _fetch(downloader, patch.url, destination, patch.hash)
            executor.apply_patch(patch, fetched.path, progress)
        else:
            package = PackageRef(url=strategy.url, hash=strategy.hash, signature=strategy.signature)
            fetched = _fetch(downloader, strategy.url, destination, strategy.hash)
            executor.install_full_package(package, fetched.path, context.preserve, progress)
        result["files_applied"] = True

        migration = migrate_schema(context, old_schema, str(current), str(target), engine)
        migration["executed_statements"] = recovered + migration["executed_statements"]
        result.update(migration)
        result["success"] = True
        result["message"] = f"Upgraded {context.project_name} from {current} to {target} ({result['strategy']})"
        log_message(f"[UPGRADE] ✓ {result['message']}")

    except PatchExecutorError as e:
        result["error"] = str(e)
        result["recoverable"] = e.is_recoverable()
        result["rollback_required"] = e.requires_rollback()
        result["message"] = "Package application failed"
        log_message(f"[UPGRADE] ✗ {e}", "ERROR")
    except MigrationError as e:
        result["error"] = str(e)
        result["recoverable"] = not e.committed
        result["message"] = "Database migration failed"
        log_message(f"[UPGRADE] ✗ {e}", "ERROR")
    except (ManifestError, VersionError, SchemaParseError, UpgradeError) as e:
        result["error"] = str(e)
        result["recoverable"] = False
        result["message"] = "Upgrade could not be planned" if not result["files_applied"] else "Schema diff failed"
        log_message(f"[UPGRADE] ✗ {e}", "ERROR")

    log_message("*" * 60)
    return result
