import io
import json
import logging
import os
import tarfile

import pytest

from skr import installer
from skr.errors import (
    ArchiveSafetyError,
    NotFoundError,
    RegistryError,
    SchemaViolationError,
)
from skr.installer import Installer, MutableTagPolicy, unpack_layer
from skr.oci import MEDIA_TYPE_SKILL_CONFIG, MEDIA_TYPE_SKILL_LAYER, Descriptor, Manifest
from skr.validation import compute_sha256


def _tarball(entries) -> bytes:
    """Build a tar.gz from (TarInfo kwargs, data) pairs."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for kwargs, data in entries:
            info = tarfile.TarInfo(kwargs.pop("name"))
            for key, value in kwargs.items():
                setattr(info, key, value)
            if data is not None:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)
    return buf.getvalue()


def _push_raw_artifact(store, reference, layers):
    """Tag a manifest whose layers are the given raw blobs."""
    config_bytes = b"{}"
    config = Descriptor(MEDIA_TYPE_SKILL_CONFIG, compute_sha256(config_bytes), len(config_bytes))
    store.push_blob(config, config_bytes)
    layer_descs = []
    for data in layers:
        desc = Descriptor(MEDIA_TYPE_SKILL_LAYER, compute_sha256(data), len(data))
        store.push_blob(desc, data)
        layer_descs.append(desc)
    desc = store.push_manifest(Manifest(config=config, layers=layer_descs))
    store.tag(desc, reference)
    return desc


@pytest.fixture()
def install_root(tmp_path):
    return str(tmp_path / "skills")


@pytest.fixture()
def policy():
    return MutableTagPolicy(["latest"])


def test_install_single(store, publish, install_root, policy):
    publish("code-review:v1", extra="body text")
    name = Installer(store, policy=policy).install("code-review:v1", install_root)

    assert name == "code-review"
    content = open(os.path.join(install_root, "code-review", "SKILL.md")).read()
    assert "body text" in content
    # No staging directories left behind
    assert os.listdir(install_root) == ["code-review"]


def test_install_with_dependencies(store, publish, install_root, policy):
    publish("app:v1", dependencies=["lib:v1", "util:v1"])
    publish("lib:v1", dependencies=["util:v1"])
    publish("util:v1")

    name = Installer(store, policy=policy).install("app:v1", install_root)

    assert name == "app"
    assert sorted(os.listdir(install_root)) == ["app", "lib", "util"]


def test_install_replaces_existing(store, make_skill, install_root, policy):
    skill_dir = make_skill("code-review")
    (skill_dir / "old.txt").write_text("old")
    store.build(str(skill_dir), "code-review:v1")
    Installer(store, policy=policy).install("code-review:v1", install_root)

    (skill_dir / "old.txt").unlink()
    (skill_dir / "new.txt").write_text("new")
    store.build(str(skill_dir), "code-review:v2")
    Installer(store, policy=policy).install("code-review:v2", install_root)

    assert sorted(os.listdir(os.path.join(install_root, "code-review"))) == ["SKILL.md", "new.txt"]


def test_install_keeps_file_modes(store, make_skill, install_root, policy):
    skill_dir = make_skill("tool")
    script = skill_dir / "run.sh"
    script.write_text("#!/bin/sh\n")
    script.chmod(0o755)
    store.build(str(skill_dir), "tool:v1")

    Installer(store, policy=policy).install("tool:v1", install_root)

    assert os.stat(os.path.join(install_root, "tool", "run.sh")).st_mode & 0o111


def test_install_missing_reference(store, install_root, policy):
    with pytest.raises(NotFoundError):
        Installer(store, policy=policy).install_one("missing:v1", install_root)


def test_invalid_metadata_is_a_warning(store, publish, install_root, policy, caplog):
    publish("legacy:v1", description="")
    with caplog.at_level(logging.WARNING, logger="skr.installer"):
        name = Installer(store, policy=policy).install_one("legacy:v1", install_root)
    assert name == "legacy"
    assert "validation issues" in caplog.text


def test_artifact_without_skill_file_is_rejected(store, install_root, policy):
    layer = _tarball([({"name": "README.md"}, b"hello")])
    _push_raw_artifact(store, "odd:v1", [layer])
    with pytest.raises(SchemaViolationError, match="not a recognizable skill"):
        Installer(store, policy=policy).install_one("odd:v1", install_root)
    assert os.listdir(install_root) == []


@pytest.mark.parametrize("layer_count", [0, 2])
def test_wrong_layer_count_is_rejected(store, install_root, policy, layer_count):
    layers = [_tarball([({"name": f"f{i}"}, b"x")]) for i in range(layer_count)]
    _push_raw_artifact(store, "multi:v1", layers)
    with pytest.raises(SchemaViolationError, match="exactly 1 layer"):
        Installer(store, policy=policy).install_one("multi:v1", install_root)


def test_path_traversal_entry_is_rejected(store, install_root, policy, tmp_path):
    layer = _tarball([
        ({"name": "SKILL.md"}, b"---\nname: evil\ndescription: x\n---\n"),
        ({"name": "../../escaped.txt"}, b"pwned"),
    ])
    _push_raw_artifact(store, "evil:v1", [layer])

    with pytest.raises(ArchiveSafetyError):
        Installer(store, policy=policy).install_one("evil:v1", install_root)

    assert not (tmp_path / "escaped.txt").exists()
    assert os.listdir(install_root) == []


def test_unpack_rejects_absolute_path(tmp_path):
    layer = _tarball([({"name": "/etc/evil"}, b"x")])
    with pytest.raises(ArchiveSafetyError):
        unpack_layer(io.BytesIO(layer), str(tmp_path / "stage"))


def test_unpack_rejects_escaping_symlink(tmp_path):
    dest = tmp_path / "stage"
    dest.mkdir()
    layer = _tarball([({"name": "link", "type": tarfile.SYMTYPE, "linkname": "../../outside"}, None)])
    with pytest.raises(ArchiveSafetyError):
        unpack_layer(io.BytesIO(layer), str(dest))
    assert os.listdir(dest) == []


def test_unpack_writes_nested_files(tmp_path):
    dest = tmp_path / "stage"
    dest.mkdir()
    layer = _tarball([
        ({"name": "docs", "type": tarfile.DIRTYPE, "mode": 0o755}, None),
        ({"name": "docs/guide.md"}, b"guide"),
    ])
    unpack_layer(io.BytesIO(layer), str(dest))
    assert (dest / "docs" / "guide.md").read_bytes() == b"guide"


def test_mutable_policy():
    policy = MutableTagPolicy(["latest", "dev-*"])
    assert policy.is_mutable("ghcr.io/acme/lint:latest")
    assert policy.is_mutable("lint:dev-123")
    assert not policy.is_mutable("lint:v1")
    assert not policy.is_mutable("lint")
    assert not policy.is_mutable("lint@sha256:" + "a" * 64)
    assert not policy.is_mutable("not a reference")


def test_mutable_tag_is_refreshed(store, publish, install_root, policy):
    publish("code-review:latest")
    pulled = []

    inst = Installer(store, puller=lambda ref, cancel: pulled.append(ref), policy=policy)
    inst.install_one("code-review:latest", install_root)
    inst.install_one("code-review:latest", install_root)

    assert pulled == ["code-review:latest", "code-review:latest"]


def test_immutable_tag_uses_local_copy(store, publish, install_root, policy):
    publish("code-review:v1")
    pulled = []
    Installer(store, puller=lambda ref, cancel: pulled.append(ref), policy=policy).install_one(
        "code-review:v1", install_root
    )
    assert pulled == []


def test_refresh_failure_falls_back_to_local_copy(store, publish, install_root, policy, caplog):
    publish("code-review:latest")

    def failing_puller(reference, cancel):
        raise RegistryError("registry unavailable", status_code=503)

    with caplog.at_level(logging.WARNING, logger="skr.installer"):
        name = Installer(store, puller=failing_puller, policy=policy).install_one(
            "code-review:latest", install_root
        )

    assert name == "code-review"
    assert "using local copy" in caplog.text


def test_refresh_failure_without_local_copy_is_fatal(store, install_root, policy):
    def failing_puller(reference, cancel):
        raise RegistryError("registry unavailable", status_code=503)

    with pytest.raises(RegistryError):
        Installer(store, puller=failing_puller, policy=policy).install_one("code-review:latest", install_root)


def test_install_many_continues_after_failure(store, publish, install_root, policy):
    publish("good:v1")
    installed, failures = Installer(store, policy=policy).install_many(["missing:v1", "good:v1"], install_root)
    assert installed == ["good"]
    assert list(failures) == ["missing:v1"]


def test_remove(store, publish, install_root, policy):
    publish("code-review:v1")
    Installer(store, policy=policy).install("code-review:v1", install_root)

    installer.remove("code-review", install_root)

    assert os.listdir(install_root) == []
    with pytest.raises(NotFoundError):
        installer.remove("code-review", install_root)


def test_replace_tree_falls_back_to_copy(tmp_path, monkeypatch):
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "sub" / "f.txt").write_text("data")
    dst = tmp_path / "dst"
    dst.mkdir()
    (dst / "stale.txt").write_text("stale")

    real_rename = os.rename

    def cross_device(a, b):
        if a == str(src):
            raise OSError(18, "Invalid cross-device link")
        real_rename(a, b)

    monkeypatch.setattr(installer.os, "rename", cross_device)
    installer.replace_tree(str(src), str(dst))

    assert not src.exists()
    assert (dst / "sub" / "f.txt").read_text() == "data"
    assert not (dst / "stale.txt").exists()
    assert sorted(os.listdir(tmp_path)) == ["dst"]


def test_replace_tree_failure_keeps_previous_install(tmp_path, monkeypatch):
    src = tmp_path / "src"
    src.mkdir()
    (src / "new.txt").write_text("new")
    dst = tmp_path / "dst"
    dst.mkdir()
    (dst / "old.txt").write_text("old")

    real_rename = os.rename

    def cross_device(a, b):
        if a == str(src):
            raise OSError(18, "Invalid cross-device link")
        real_rename(a, b)

    def disk_full(a, b, symlinks=False):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(installer.os, "rename", cross_device)
    monkeypatch.setattr(installer.shutil, "copytree", disk_full)

    with pytest.raises(OSError):
        installer.replace_tree(str(src), str(dst))

    assert (dst / "old.txt").read_text() == "old"
    assert sorted(os.listdir(tmp_path)) == ["dst", "src"]


def test_install_many_isolates_undecodable_manifest(store, publish, install_root, policy):
    bad = b'{"schemaVersion":"two","config":{"mediaType":"x","digest":"sha256:' + b"0" * 64 + b'","size":1}}'
    desc = Descriptor("application/vnd.oci.image.manifest.v1+json", compute_sha256(bad), len(bad))
    store.push_blob(desc, bad)
    store.tag(desc, "bad:v1")
    publish("good:v1")

    installed, failures = Installer(store, policy=policy).install_many(["bad:v1", "good:v1"], install_root)

    assert installed == ["good"]
    assert list(failures) == ["bad:v1"]


def test_manifest_json_is_not_mutated_by_install(store, publish, install_root, policy):
    desc = publish("code-review:v1")
    before = store.fetch_bytes(desc)
    Installer(store, policy=policy).install("code-review:v1", install_root)
    assert json.loads(store.fetch_bytes(desc)) == json.loads(before)
