from __future__ import annotations

from pathlib import Path

import pytest

from helpers import snapshot_tree
from upgrades.modules.patch import file_operations
from upgrades.modules.patch import index as executor_module
from upgrades.modules.patch import (
    AtomicOperationFailed,
    DownloadFailed,
    ExtractionFailed,
    HashMismatch,
    IoFailure,
    OperationKind,
    PathError,
    PathOperation,
    PatchExecutionPlan,
    PatchExecutor,
    PermissionFailure,
    RollbackFailed,
    SignatureVerificationFailed,
    UnsupportedOperation,
    VerificationFailed,
)
from upgrades.modules.patch.index import BACKUP_PREFIX, EXTRACT_PREFIX
from upgrades.modules.strategy.manifest import FileOpSet, PackageRef, PatchOperations, PatchRef
from upgrades.utils.index import compute_file_sha256


def _patch_ref(archive: Path, replace=(), delete=(), replace_dirs=(), **kwargs) -> PatchRef:
    operations = PatchOperations(
        replace=FileOpSet(frozenset(replace), frozenset(replace_dirs)),
        delete=FileOpSet(frozenset(delete)),
    )
    kwargs.setdefault("hash", compute_file_sha256(archive))
    return PatchRef(url=str(archive), operations=operations, **kwargs)


def _leftovers(directory: Path) -> list:
    return [p.name for p in directory.iterdir() if p.name.startswith((BACKUP_PREFIX, EXTRACT_PREFIX))]


def test_apply_patch_replaces_and_deletes(managed_root, make_archive):
    archive = make_archive("patch.tar.gz", {
        "bin/server": "new server\n",
        "config/app.conf": "mode=new\n",
        "web/index.html": "<html></html>\n",
    })
    ref = _patch_ref(archive, replace=["bin/server", "config/app.conf"], delete=["bin/helper"], replace_dirs=["web"])
    progress = []

    plan = PatchExecutor(managed_root).apply_patch(ref, archive, progress.append)

    assert (managed_root / "bin" / "server").read_text() == "new server\n"
    assert (managed_root / "config" / "app.conf").read_text() == "mode=new\n"
    assert (managed_root / "web" / "index.html").exists()
    assert not (managed_root / "bin" / "helper").exists()
    assert (managed_root / "data" / "db.bin").read_text() == "precious\n"
    assert progress[-1] == pytest.approx(1.0)
    assert "replace files: 2" in plan.summary()
    assert _leftovers(managed_root.parent) == []


def test_delete_of_missing_path_is_a_no_op(managed_root, make_archive):
    archive = make_archive("patch.tar.gz", {"bin/server": "new\n"})
    ref = _patch_ref(archive, replace=["bin/server"], delete=["bin/never_existed"])

    PatchExecutor(managed_root).apply_patch(ref, archive)

    assert (managed_root / "bin" / "server").read_text() == "new\n"


def test_failure_midway_restores_everything(managed_root, make_archive, monkeypatch):
    archive = make_archive("patch.tar.gz", {
        "bin/new_tool": "tool\n",
        "bin/server": "new server\n",
        "config/app.conf": "mode=new\n",
        "extras/tool.sh": "#!/bin/sh\n",
    })
    ref = _patch_ref(
        archive,
        replace=["bin/new_tool", "bin/server", "config/app.conf", "extras/tool.sh"],
        delete=["bin/helper"],
    )
    before = snapshot_tree(managed_root)
    real_apply = PathOperation.apply

    def failing_apply(self, managed, payload):
        if self.relative_path == "extras/tool.sh":
            raise OSError(28, "No space left on device")
        real_apply(self, managed, payload)

    monkeypatch.setattr(PathOperation, "apply", failing_apply)

    with pytest.raises(AtomicOperationFailed) as excinfo:
        PatchExecutor(managed_root).apply_patch(ref, archive)

    assert isinstance(excinfo.value.cause, IoFailure)
    assert excinfo.value.is_recoverable()
    assert excinfo.value.requires_rollback()
    assert snapshot_tree(managed_root) == before
    assert not (managed_root / "extras").exists()
    assert not (managed_root / "bin" / "new_tool").exists()
    assert _leftovers(managed_root.parent) == []


def test_interrupt_mid_apply_rolls_back_and_propagates(managed_root, make_archive, monkeypatch):
    archive = make_archive("patch.tar.gz", {"bin/server": "new server\n", "config/app.conf": "mode=new\n"})
    ref = _patch_ref(archive, replace=["bin/server", "config/app.conf"])
    before = snapshot_tree(managed_root)
    real_replace = file_operations.atomic_file_replace
    calls = []

    def interrupted_replace(source, target):
        calls.append(target)
        if len(calls) == 2:
            raise KeyboardInterrupt
        real_replace(source, target)

    monkeypatch.setattr(file_operations, "atomic_file_replace", interrupted_replace)

    with pytest.raises(KeyboardInterrupt):
        PatchExecutor(managed_root).apply_patch(ref, archive)

    assert len(calls) == 2
    assert snapshot_tree(managed_root) == before
    assert _leftovers(managed_root.parent) == []


def test_rollback_checksum_mismatch_is_reported(managed_root, make_archive, monkeypatch):
    archive = make_archive("patch.tar.gz", {"bin/server": "new\n", "config/app.conf": "mode=new\n"})
    ref = _patch_ref(archive, replace=["bin/server", "config/app.conf"])

    def failing_apply(self, managed, payload):
        monkeypatch.setattr(executor_module, "compute_path_sha256", lambda path: "0" * 64)
        raise OSError("disk went away")

    monkeypatch.setattr(PathOperation, "apply", failing_apply)

    with pytest.raises(RollbackFailed) as excinfo:
        PatchExecutor(managed_root).apply_patch(ref, archive)

    error = excinfo.value
    assert sorted(error.paths) == ["bin/server", "config/app.conf"]
    assert not error.is_recoverable()
    assert Path(error.backup_location).is_dir()
    assert Path(error.backup_location).name.startswith(BACKUP_PREFIX)


def test_hash_mismatch_leaves_root_untouched(managed_root, make_archive):
    archive = make_archive("patch.tar.gz", {"bin/server": "evil\n"})
    ref = _patch_ref(archive, replace=["bin/server"], hash="sha256:" + "0" * 64)
    before = snapshot_tree(managed_root)

    with pytest.raises(HashMismatch) as excinfo:
        PatchExecutor(managed_root).apply_patch(ref, archive)

    assert not excinfo.value.is_recoverable()
    assert not excinfo.value.requires_rollback()
    assert snapshot_tree(managed_root) == before


def test_missing_managed_root(tmp_path):
    plan = PatchExecutionPlan(tmp_path / "missing", None, [PathOperation(OperationKind.DELETE_FILE, "x")])
    with pytest.raises(PathError):
        PatchExecutor(tmp_path / "missing").apply(plan)


def test_payload_missing_entry_fails_preflight(managed_root, tmp_path):
    payload = tmp_path / "payload"
    (payload / "bin").mkdir(parents=True)
    (payload / "bin" / "server").write_text("new\n")
    operations = PatchOperations(replace=FileOpSet(frozenset({"bin/server", "config/app.conf"})))
    plan = PatchExecutionPlan.from_patch_operations(managed_root, payload, operations)
    before = snapshot_tree(managed_root)

    with pytest.raises(VerificationFailed, match="config/app.conf"):
        PatchExecutor(managed_root).apply(plan)

    assert snapshot_tree(managed_root) == before


def test_target_outside_root_rejected(managed_root):
    plan = PatchExecutionPlan(managed_root, None, [PathOperation(OperationKind.DELETE_FILE, "../outside")])
    with pytest.raises(PathError, match="escapes"):
        PatchExecutor(managed_root).apply(plan)


def test_backup_inside_root_rejected(managed_root):
    plan = PatchExecutionPlan(managed_root, None, [PathOperation(OperationKind.DELETE_FILE, "bin/helper")])
    with pytest.raises(PathError, match="outside the managed root"):
        PatchExecutor(managed_root, backup_root=managed_root / "backups").apply(plan)


def test_full_package_preserves_user_data(managed_root, make_archive):
    (managed_root / "legacy.txt").write_text("old\n")
    archive = make_archive("full.tar.gz", {
        "stack/bin/server": "full server\n",
        "stack/config/app.conf": "mode=full\n",
        "stack/docker-compose.yml": "services: {app: {}}\n",
        "stack/data/seed.bin": "seed\n",
    })
    ref = PackageRef(url=str(archive), hash=compute_file_sha256(archive))

    PatchExecutor(managed_root).install_full_package(ref, archive)

    assert (managed_root / "bin" / "server").read_text() == "full server\n"
    assert not (managed_root / "bin" / "helper").exists()
    assert not (managed_root / "legacy.txt").exists()
    assert (managed_root / "data" / "db.bin").read_text() == "precious\n"
    assert not (managed_root / "data" / "seed.bin").exists()
    assert (managed_root / "docker-compose.yml").read_text() == "services: {app: {}}\n"


def test_full_package_plan_lists_operations(managed_root, tmp_path):
    payload = tmp_path / "payload"
    (payload / "bin").mkdir(parents=True)
    (payload / "README").write_text("hi\n")
    plan = PatchExecutionPlan.for_full_package(managed_root, payload)

    assert [str(op) for op in plan.operations] == [
        "delete_directory:config",
        "delete_file:docker-compose.yml",
        "replace_file:README",
        "replace_directory:bin",
    ]


@pytest.mark.parametrize(
    "error, recoverable, rollback",
    [
        (IoFailure("x"), True, True),
        (DownloadFailed("x"), True, False),
        (ExtractionFailed("x"), True, False),
        (AtomicOperationFailed("x"), True, True),
        (PathError("x"), False, False),
        (PermissionFailure("x"), False, False),
        (VerificationFailed("x"), False, False),
        (HashMismatch("a", "b"), False, False),
        (SignatureVerificationFailed("x"), False, False),
        (UnsupportedOperation("x"), False, False),
        (RollbackFailed(["a"], "/tmp/backup"), False, True),
    ],
)
def test_error_classification(error, recoverable, rollback):
    assert error.is_recoverable() is recoverable
    assert error.requires_rollback() is rollback


def test_delete_kind_must_match_what_is_on_disk(managed_root):
    plan = PatchExecutionPlan(managed_root, None, [PathOperation(OperationKind.DELETE_FILE, "config")])
    before = snapshot_tree(managed_root)

    with pytest.raises(UnsupportedOperation, match="it is a directory") as excinfo:
        PatchExecutor(managed_root).apply(plan)

    assert not excinfo.value.is_recoverable()
    assert not excinfo.value.requires_rollback()
    assert snapshot_tree(managed_root) == before


def test_operation_summary_counts_each_kind(managed_root):
    operations = PatchOperations(
        replace=FileOpSet(frozenset({"bin/server", "config/app.conf"}), frozenset({"web"})),
        delete=FileOpSet(frozenset({"bin/helper"}), frozenset({"legacy"})),
    )

    summary = PatchExecutor(managed_root).operation_summary(operations)

    assert "replace files: 2" in summary
    assert "replace directories: 1" in summary
    assert "delete files: 1" in summary
    assert "delete directories: 1" in summary
