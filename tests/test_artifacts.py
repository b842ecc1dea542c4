# tests/test_artifacts.py
import io
import json
import os
import tarfile
import time

import pytest

from relayci.artifacts import ArtifactStore
from relayci.errors import ArtifactError


@pytest.fixture
def build_dir(tmp_path):
    d = tmp_path / "build"
    (d / "static").mkdir(parents=True)
    (d / "index.html").write_text("<html></html>")
    (d / "static" / "app.js").write_text("console.log(1)")
    (d / "__pycache__").mkdir()
    (d / "__pycache__" / "x.pyc").write_bytes(b"\0")
    return d


def test_publish_then_download_preserves_tree(store, build_dir, tmp_path):
    ref = store.publish("run1", "webapp", build_dir)
    assert ref.file_count == 2
    assert ref.path.name == "webapp.tar.gz"
    assert store.manifest_path("run1", "webapp").exists()

    dest = tmp_path / "out"
    got = store.download("run1", "webapp", dest)
    assert got.digest == ref.digest
    assert (dest / "index.html").read_text() == "<html></html>"
    assert (dest / "static" / "app.js").read_text() == "console.log(1)"
    assert not (dest / "__pycache__").exists()


def test_digest_is_content_addressed(store, build_dir):
    a = store.publish("run1", "a", build_dir)
    b = store.publish("run2", "a", build_dir)
    assert a.digest == b.digest

    (build_dir / "index.html").write_text("changed")
    c = store.publish("run3", "a", build_dir)
    assert c.digest != a.digest


def test_single_file_artifact(store, tmp_path):
    f = tmp_path / "report.txt"
    f.write_text("ok")
    store.publish("run1", "report", f)
    store.download("run1", "report", tmp_path / "dl")
    assert (tmp_path / "dl" / "report.txt").read_text() == "ok"


def test_publish_same_name_twice_fails(store, build_dir):
    store.publish("run1", "webapp", build_dir)
    with pytest.raises(ArtifactError, match="already published"):
        store.publish("run1", "webapp", build_dir)


def test_publish_missing_source(store, tmp_path):
    with pytest.raises(ArtifactError, match="path not found"):
        store.publish("run1", "x", tmp_path / "missing")


def test_invalid_names(store, build_dir):
    with pytest.raises(ArtifactError):
        store.publish("run1", "../escape", build_dir)


def test_download_missing_artifact(store, tmp_path):
    with pytest.raises(ArtifactError, match="not found"):
        store.download("run1", "nope", tmp_path / "dl")


def test_download_rejects_path_traversal(store, tmp_path):
    run_dir = store.root / "evil"
    run_dir.mkdir()
    with tarfile.open(run_dir / "bad.tar.gz", "w:gz") as tar:
        data = b"pwned"
        info = tarfile.TarInfo("../outside.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    (run_dir / "bad.manifest.json").write_text(json.dumps(
        {"run_id": "evil", "name": "bad", "digest": "x", "files": [], "size": 0}
    ))

    with pytest.raises(ArtifactError, match="unsafe path"):
        store.download("evil", "bad", tmp_path / "dl")
    assert not (tmp_path / "outside.txt").exists()


def test_symlinked_file_and_directory_roundtrip(store, build_dir, tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "lib.js").write_text("lib")
    (build_dir / "alias.html").symlink_to(build_dir / "index.html")
    (build_dir / "vendor").symlink_to(shared, target_is_directory=True)

    ref = store.publish("run1", "drop", build_dir)
    paths = [e["path"] for e in ref.manifest["files"]]
    assert "alias.html" in paths
    assert "vendor/lib.js" in paths

    dest = tmp_path / "out"
    store.download("run1", "drop", dest)
    assert (dest / "alias.html").read_text() == "<html></html>"
    assert not (dest / "alias.html").is_symlink()
    assert (dest / "vendor" / "lib.js").read_text() == "lib"


def test_symlink_loop_is_not_followed(store, build_dir):
    (build_dir / "static" / "up").symlink_to(build_dir, target_is_directory=True)
    ref = store.publish("run1", "drop", build_dir)
    assert ref.file_count == 2


def test_broken_symlink_rejected_at_publish(store, build_dir):
    (build_dir / "gone.txt").symlink_to(build_dir / "missing.txt")
    with pytest.raises(ArtifactError, match="Broken symlink"):
        store.publish("run1", "drop", build_dir)
    assert not store.artifact_path("run1", "drop").exists()


def test_corrupt_manifest(store, build_dir):
    store.publish("run1", "webapp", build_dir)
    store.manifest_path("run1", "webapp").write_text("{not json")
    with pytest.raises(ArtifactError, match="Corrupt manifest"):
        store.get("run1", "webapp")


def test_list(store, build_dir):
    store.publish("run1", "b", build_dir)
    store.publish("run1", "a", build_dir)
    assert [r.name for r in store.list("run1")] == ["a", "b"]
    assert store.list("unknown") == []


def test_prune_keeps_newest_runs(store, build_dir):
    for i, run_id in enumerate(["r1", "r2", "r3"]):
        store.publish(run_id, "a", build_dir)
        stamp = time.time() - 100 + i
        os.utime(store.root / run_id, (stamp, stamp))

    assert store.runs() == ["r3", "r2", "r1"]
    assert store.prune(keep=1) == ["r2", "r1"]
    assert store.runs() == ["r3"]
