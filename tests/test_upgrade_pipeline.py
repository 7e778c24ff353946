from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect

from helpers import snapshot_tree, write_json
from upgrades import UpgradeContext, UpgradeError, run_upgrade, strategy_name
from upgrades.modules.migrations import MigrationError, MigrationRunner
from upgrades.modules.strategy import NoUpgrade, ServiceManifest
from upgrades.utils.architecture import Architecture
from upgrades.utils.downloader import DownloadResult
from upgrades.utils.index import compute_file_sha256
from upgrades.utils.version import Version

USERS = "CREATE TABLE users (id INT NOT NULL AUTO_INCREMENT, username VARCHAR(64) NOT NULL, PRIMARY KEY (id));\n"
AUDIT = "CREATE TABLE audit (id INT NOT NULL, note VARCHAR(64), PRIMARY KEY (id));\n"


class RecordingDownloader:
    """Stands in for the HTTP fetch by handing back a prepared archive."""

    def __init__(self, archive: Path):
        self.archive = archive
        self.calls = []

    def __call__(self, url: str, destination: Path) -> DownloadResult:
        self.calls.append((url, destination))
        return DownloadResult(self.archive, compute_file_sha256(self.archive), self.archive.stat().st_size)


@pytest.fixture
def context(managed_root):
    return UpgradeContext(work_dir=managed_root, architecture="x86_64", diff_output="diffs/schema.sql")


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'stack.db'}")
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE users (id INTEGER NOT NULL, username VARCHAR(64) NOT NULL, PRIMARY KEY (id))")
    yield engine
    engine.dispose()


def _patch_manifest(manifest_data, archive: Path, **patch_overrides) -> ServiceManifest:
    patch = {
        "url": "https://releases.example.com/patch-1.0.1.tar.gz",
        "hash": compute_file_sha256(archive),
        "base_version": "1.0.0",
        "operations": {
            "replace": {"files": ["bin/server", "config/init_mysql.sql"]},
            "delete": {"files": ["bin/helper"]},
        },
    }
    patch.update(patch_overrides)
    return ServiceManifest.from_dict(manifest_data(version="1.0.1", patch={"x86_64": patch}))


def test_already_up_to_date(context, manifest_data):
    result = run_upgrade(context, ServiceManifest.from_dict(manifest_data(version="1.0.1")), "1.0.1")
    assert result["success"]
    assert result["strategy"] == "none"
    assert result["changed_files"] == []
    assert not result["files_applied"]


def test_patch_upgrade_migrates_database(context, managed_root, manifest_data, make_archive, engine):
    archive = make_archive("patch.tar.gz", {
        "bin/server": "new server\n",
        "config/init_mysql.sql": USERS + AUDIT,
    })
    downloader = RecordingDownloader(archive)

    result = run_upgrade(context, _patch_manifest(manifest_data, archive), "1.0.0",
                         downloader=downloader, engine=engine)

    assert result["success"], result["error"]
    assert result["strategy"] == "patch"
    assert result["target_version"] == "1.0.1.0"
    assert result["changed_files"] == ["bin/helper", "bin/server", "config/init_mysql.sql"]
    assert downloader.calls == [
        ("https://releases.example.com/patch-1.0.1.tar.gz", managed_root.parent / "downloads" / "1.0.1")
    ]
    assert (managed_root / "bin" / "server").read_text() == "new server\n"
    assert not (managed_root / "bin" / "helper").exists()

    assert result["schema_description"] == "Schema diff 1.0.0.0 -> 1.0.1.0: 1 table(s) added, 0 altered, 0 removed"
    assert result["executed_statements"] == [
        "CREATE TABLE IF NOT EXISTS `audit` (`id` INT NOT NULL, `note` VARCHAR(64), PRIMARY KEY (`id`))"
    ]
    assert "audit" in inspect(engine).get_table_names()
    diff_file = Path(result["diff_file"])
    assert diff_file == managed_root.parent / "diffs" / "schema.sql"
    assert "-- To version: 1.0.1.0" in diff_file.read_text()


def test_unchanged_schema_skips_database(context, managed_root, manifest_data, make_archive):
    archive = make_archive("patch.tar.gz", {"bin/server": "new\n", "config/init_mysql.sql": USERS})

    result = run_upgrade(context, _patch_manifest(manifest_data, archive), "1.0.0",
                         downloader=RecordingDownloader(archive))

    assert result["success"]
    assert result["schema_description"].endswith("no changes")
    assert result["executed_statements"] == []


def test_hash_mismatch_is_not_recoverable(context, managed_root, manifest_data, make_archive):
    archive = make_archive("patch.tar.gz", {"bin/server": "tampered\n", "config/init_mysql.sql": USERS})
    manifest = _patch_manifest(manifest_data, archive, hash="sha256:" + "0" * 64)
    before = snapshot_tree(managed_root)

    result = run_upgrade(context, manifest, "1.0.0", downloader=RecordingDownloader(archive))

    assert not result["success"]
    assert result["message"] == "Package application failed"
    assert result["recoverable"] is False
    assert result["rollback_required"] is False
    assert "Hash mismatch" in result["error"]
    assert snapshot_tree(managed_root) == before


def test_migration_failure_after_files_applied(context, manifest_data, make_archive, engine):
    altered = USERS.replace("NOT NULL, PRIMARY", "NOT NULL, email VARCHAR(255), PRIMARY")
    archive = make_archive("patch.tar.gz", {"bin/server": "new\n", "config/init_mysql.sql": altered})

    result = run_upgrade(context, _patch_manifest(manifest_data, archive), "1.0.0",
                         downloader=RecordingDownloader(archive), engine=engine)

    # sqlite has no AFTER clause, so the generated ALTER is rejected
    assert not result["success"]
    assert result["files_applied"]
    assert result["message"] == "Database migration failed"
    assert result["recoverable"] is True
    assert context.pending_diff_path.is_file()
    assert (context.download_dir / "1.0.1" / "init_mysql_old.sql").read_text() == USERS

    retry = run_upgrade(context, _patch_manifest(manifest_data, archive), "1.0.0",
                        downloader=RecordingDownloader(archive), engine=engine)

    # the pending diff runs again instead of an empty diff against the patched root
    assert not retry["success"]
    assert retry["message"] == "Database migration failed"
    assert [c["name"] for c in inspect(engine).get_columns("users")] == ["id", "username"]


def test_pending_migration_is_resumed_on_retry(context, manifest_data, make_archive, engine, monkeypatch):
    archive = make_archive("patch.tar.gz", {"bin/server": "new\n", "config/init_mysql.sql": USERS + AUDIT})
    manifest = _patch_manifest(manifest_data, archive)

    def unreachable(self, script):
        raise MigrationError("Can't connect to MySQL server")

    monkeypatch.setattr(MigrationRunner, "execute_diff_sql", unreachable)
    first = run_upgrade(context, manifest, "1.0.0", downloader=RecordingDownloader(archive), engine=engine)

    assert not first["success"]
    assert first["files_applied"]
    assert first["recoverable"] is True
    assert "audit" not in inspect(engine).get_table_names()

    monkeypatch.undo()
    second = run_upgrade(context, manifest, "1.0.0", downloader=RecordingDownloader(archive), engine=engine)

    assert second["success"], second["error"]
    assert second["schema_description"].endswith("no changes")
    assert second["executed_statements"] == [
        "CREATE TABLE IF NOT EXISTS `audit` (`id` INT NOT NULL, `note` VARCHAR(64), PRIMARY KEY (`id`))"
    ]
    assert "audit" in inspect(engine).get_table_names()
    assert not context.pending_diff_path.exists()
    assert len(list(context.download_dir.glob("diff_sql_executed_*.sql"))) == 1


def test_full_upgrade_preserves_data(context, managed_root, manifest_data, make_archive):
    archive = make_archive("full.tar.gz", {
        "stack/bin/server": "full server\n",
        "stack/config/init_mysql.sql": USERS + AUDIT,
        "stack/docker-compose.yml": "services: {}\n",
    })
    data = manifest_data(version="2.0.0")
    data["platforms"]["x86_64"]["hash"] = compute_file_sha256(archive)
    downloader = RecordingDownloader(archive)

    result = run_upgrade(context, ServiceManifest.from_dict(data), "1.0.0", downloader=downloader)

    assert result["success"], result["error"]
    assert result["strategy"] == "full"
    assert downloader.calls[0][0] == "https://releases.example.com/stack-x86_64.tar.gz"
    assert (managed_root / "data" / "db.bin").read_text() == "precious\n"
    assert not (managed_root / "bin" / "helper").exists()
    # no database configured: the diff is written but not run
    assert result["executed_statements"] == []
    assert "CREATE TABLE IF NOT EXISTS `audit`" in Path(result["diff_file"]).read_text()


def test_invalid_current_version(context, manifest_data):
    result = run_upgrade(context, ServiceManifest.from_dict(manifest_data()), "latest")
    assert not result["success"]
    assert result["recoverable"] is False
    assert result["message"] == "Upgrade could not be planned"


def test_context_from_index(tmp_path):
    write_json(tmp_path / "index.json", {
        "metadata": {"schema_version": "1.0.0"},
        "config": {
            "work_dir": "stack/app",
            "architecture": "arm64",
            "diff_output": "diffs/schema.sql",
            "database_url": "sqlite://",
            "unexpected": True,
        },
    })

    context = UpgradeContext.from_index(tmp_path / "index.json")

    assert context.work_dir == tmp_path / "stack" / "app"
    assert context.compose_file == tmp_path / "stack" / "app" / "docker-compose.yml"
    assert context.env_file == tmp_path / "stack" / "app" / ".env"
    assert context.backup_dir == tmp_path / "stack" / "backups"
    assert context.download_dir == tmp_path / "stack" / "downloads"
    assert context.diff_output == tmp_path / "stack" / "diffs" / "schema.sql"
    assert context.schema_path == tmp_path / "stack" / "app" / "config" / "init_mysql.sql"
    assert context.architecture is Architecture.AARCH64
    assert context.database_url == "sqlite://"


@pytest.mark.parametrize(
    "config",
    [
        {"architecture": "x86_64"},
        {"work_dir": "app", "architecture": "sparc"},
    ],
)
def test_context_rejects_bad_config(tmp_path, config):
    write_json(tmp_path / "index.json", {"config": config})
    with pytest.raises(UpgradeError):
        UpgradeContext.from_index(tmp_path)


def test_context_requires_config_block(tmp_path):
    write_json(tmp_path / "index.json", {"metadata": {}})
    with pytest.raises(UpgradeError, match="config"):
        UpgradeContext.from_index(tmp_path / "index.json")


def test_strategy_name():
    assert strategy_name(NoUpgrade(target_version=Version(1, 0, 0))) == "none"
