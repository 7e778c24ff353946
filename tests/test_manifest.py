from __future__ import annotations

import json

import pytest

from upgrades.modules.strategy import ManifestError, ServiceManifest, validate_relative_path
from upgrades.utils.architecture import Architecture
from upgrades.utils.version import Version


def _patch_block(**overrides) -> dict:
    block = {
        "url": "https://releases.example.com/patch-1.0.1.tar.gz",
        "hash": "d" * 64,
        "signature": "c2lnbmF0dXJl",
        "base_version": "1.0.0",
        "operations": {
            "replace": {"files": ["bin/server", "config/app.conf"], "directories": ["web/"]},
            "delete": {"files": ["bin/helper"], "directories": []},
        },
    }
    block.update(overrides)
    return block


def test_parses_full_manifest(manifest_data):
    manifest = ServiceManifest.from_dict(manifest_data(patch={"x86_64": _patch_block()}))

    assert manifest.version == Version(1, 0, 1)
    assert manifest.full_package.hash == "sha256:" + "a" * 64
    assert set(manifest.platforms) == {Architecture.X86_64, Architecture.AARCH64}

    patch = manifest.patch[Architecture.X86_64]
    assert patch.base_version == Version(1, 0, 0)
    assert patch.operations.replace.directories == frozenset({"web"})
    assert patch.operations.total_operations() == 4
    assert patch.operations.changed_paths() == ["bin/helper", "bin/server", "config/app.conf", "web"]
    assert manifest.has_patch_for(Architecture.X86_64)
    assert not manifest.has_patch_for(Architecture.AARCH64)


def test_architecture_aliases_in_keys(manifest_data):
    manifest = ServiceManifest.from_dict(manifest_data(patch={"arm64": _patch_block()}))
    assert Architecture.AARCH64 in manifest.patch


def test_full_package_prefers_platform_package(manifest_data):
    manifest = ServiceManifest.from_dict(manifest_data())
    assert manifest.full_package_for(Architecture.AARCH64).url.endswith("stack-aarch64.tar.gz")
    assert manifest.full_package_for(None).url.endswith("stack-full.tar.gz")


def test_platform_packages_alone_are_enough(manifest_data):
    data = manifest_data()
    del data["packages"]
    manifest = ServiceManifest.from_dict(data)
    assert manifest.full_package is None
    assert manifest.supports_architecture(Architecture.X86_64)


def test_missing_packages_rejected(manifest_data):
    data = manifest_data()
    del data["packages"]
    del data["platforms"]
    with pytest.raises(ManifestError, match="neither"):
        ServiceManifest.from_dict(data)


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d.update(version="1.0"), "version"),
        (lambda d: d.update(release_date="yesterday"), "release_date"),
        (lambda d: d["packages"]["full"].update(url="ftp://example.com/x.tar.gz"), "unsupported URL"),
        (lambda d: d["packages"]["full"].update(url=""), "must not be empty"),
        (lambda d: d["platforms"].update(riscv64={"url": "https://x/y.tar.gz"}), "unknown architecture"),
    ],
)
def test_invalid_manifests(manifest_data, mutate, message):
    data = manifest_data()
    mutate(data)
    with pytest.raises(ManifestError, match=message):
        ServiceManifest.from_dict(data)


@pytest.mark.parametrize("path", ["../etc/passwd", "bin/../../escape", "/etc/passwd", "C:\\Windows\\system32", ""])
def test_patch_paths_must_stay_relative(manifest_data, path):
    block = _patch_block(operations={"replace": {"files": [path]}})
    with pytest.raises(ManifestError):
        ServiceManifest.from_dict(manifest_data(patch={"x86_64": block}))


def test_validate_relative_path_strips_slashes():
    assert validate_relative_path("config/", "field") == "config"


def test_invalid_base_version(manifest_data):
    block = _patch_block(base_version="one")
    with pytest.raises(ManifestError, match="base_version"):
        ServiceManifest.from_dict(manifest_data(patch={"x86_64": block}))


def test_from_json(manifest_data):
    manifest = ServiceManifest.from_json(json.dumps(manifest_data(version="2.0.0.1")))
    assert manifest.version == Version(2, 0, 0, 1)
    with pytest.raises(ManifestError, match="not valid JSON"):
        ServiceManifest.from_json("{not json")
