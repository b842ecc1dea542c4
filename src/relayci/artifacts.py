# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import ArtifactError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# Artifacts are path-addressed by (run_id, name):
#
#   root/
#     <run_id>/
#       <name>.tar.gz
#       <name>.manifest.json
#
# and content-addressed by a tree digest over (relpath, sha256, size) of
# every file, stored in the manifest and re-checked on download.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".relayci/artifacts"
DEFAULT_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class ArtifactRef:
    run_id: str
    name: str
    digest: str
    file_count: int
    size: int
    path: Path
    manifest: Dict = field(default_factory=dict, compare=False)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    # leading slash lets "**/x/**" match top-level "x/..."
    return any(fnmatch(rel, g) or fnmatch("/" + rel, g) for g in globs)


def _iter_files(source: Path) -> Iterable[Tuple[Path, str]]:
    """
    Yield (file, relpath) pairs in deterministic order.

    Symlinks are followed: linked files are packed by content and linked
    directories are walked, except a link back into one of its own parents.
    """
    if source.is_file():
        yield source, source.name
        return
    found: List[Tuple[Path, str]] = []
    for root, dirs, names in os.walk(source, followlinks=True):
        here = Path(root)
        parents = {os.path.realpath(a) for a in here.parents if a == source or source in a.parents}
        if os.path.realpath(here) in parents:
            dirs[:] = []
            continue
        for n in names:
            p = Path(root) / n
            if not p.exists():
                raise ArtifactError(f"Broken symlink in artifact source: {p}")
            if p.is_file():
                found.append((p, p.relative_to(source).as_posix()))
    yield from sorted(found, key=lambda item: item[1])


def _fingerprint(files: List[Tuple[Path, str]]) -> Tuple[str, List[Dict]]:
    entries = [
        {"path": rel, "sha256": _hash_file_contents(p), "size": p.stat().st_size}
        for p, rel in files
    ]
    entries.sort(key=lambda e: e["path"])
    digest = _sha256_str(_json_dumps_stable([[e["path"], e["sha256"], e["size"]] for e in entries]))
    return digest, entries


def newest_dirs(root: Path) -> List[Path]:
    """Subdirectories of `root`, newest (by mtime) first."""
    if not root.is_dir():
        return []
    dirs = [p for p in root.iterdir() if p.is_dir()]
    dirs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return dirs


def prune_dirs(root: str | Path, keep: int) -> List[str]:
    """Delete all but the newest `keep` subdirectories of `root`. Returns removed names."""
    removed = []
    for d in newest_dirs(Path(root))[max(keep, 0):]:
        shutil.rmtree(d)
        removed.append(d.name)
    return removed


class ArtifactStore:
    """File-based artifact store shared by all stages of a run."""

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, excludes: List[str] | None = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.excludes = list(DEFAULT_EXCLUDES) + list(excludes or [])

    def _run_dir(self, run_id: str) -> Path:
        d = self.root / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, run_id: str, name: str) -> Path:
        return self._run_dir(run_id) / f"{name}.tar.gz"

    def manifest_path(self, run_id: str, name: str) -> Path:
        return self._run_dir(run_id) / f"{name}.manifest.json"

    @staticmethod
    def _check_name(name: str) -> None:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ArtifactError(f"Invalid artifact name: {name!r}")

    def publish(self, run_id: str, name: str, source: str | Path) -> ArtifactRef:
        """
        Pack a file or directory as artifact `name` of run `run_id`.

        Raises:
            ArtifactError: if the source is missing or the name is taken.
        """
        self._check_name(name)
        src = Path(source).resolve()
        if not src.exists():
            raise ArtifactError(f"Cannot publish artifact '{name}': path not found: {src}")

        art = self.artifact_path(run_id, name)
        man = self.manifest_path(run_id, name)
        if art.exists():
            raise ArtifactError(f"Artifact '{name}' already published in run {run_id}")

        files = [(p, rel) for p, rel in _iter_files(src) if not _matches_any_glob(rel, self.excludes)]
        digest, entries = _fingerprint(files)
        manifest = {
            "v": 1,
            "run_id": run_id,
            "name": name,
            "source": str(src),
            "kind": "file" if src.is_file() else "directory",
            "digest": digest,
            "files": entries,
            "size": sum(e["size"] for e in entries),
            "published_at_unix": int(time.time()),
        }

        tmp = art.with_suffix(".gz.tmp")
        try:
            # build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz", dereference=True) as tar:
                for p, rel in files:
                    tar.add(str(p), arcname=rel, recursive=False)
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

        log.debug("published artifact %s/%s (%d files, %s)", run_id, name, len(entries), digest[:12])
        return self._ref(manifest, art)

    def _ref(self, manifest: Dict, art: Path) -> ArtifactRef:
        return ArtifactRef(
            run_id=manifest["run_id"],
            name=manifest["name"],
            digest=manifest["digest"],
            file_count=len(manifest.get("files", [])),
            size=int(manifest.get("size", 0)),
            path=art,
            manifest=manifest,
        )

    def get(self, run_id: str, name: str) -> ArtifactRef:
        self._check_name(name)
        art = self.root / run_id / f"{name}.tar.gz"
        man = self.root / run_id / f"{name}.manifest.json"
        if not art.exists() or not man.exists():
            raise ArtifactError(f"Artifact '{name}' not found in run {run_id}")
        try:
            manifest = json.loads(man.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ArtifactError(f"Corrupt manifest for artifact '{name}': {e}") from e
        return self._ref(manifest, art)

    def download(self, run_id: str, name: str, dest: str | Path) -> ArtifactRef:
        """
        Extract artifact `name` of run `run_id` into `dest`.

        The extracted tree is re-hashed and compared with the manifest digest.
        """
        ref = self.get(run_id, name)
        target = Path(dest).resolve()
        target.mkdir(parents=True, exist_ok=True)

        with tarfile.open(str(ref.path), mode="r:gz") as tar:
            members = tar.getmembers()
            for m in members:
                out = (target / m.name).resolve()
                if out != target and target not in out.parents:
                    raise ArtifactError(f"Artifact '{name}' contains unsafe path: {m.name}")
                if not (m.isfile() or m.isdir()):
                    raise ArtifactError(f"Artifact '{name}' contains unsupported member: {m.name}")
            tar.extractall(path=str(target), members=members)

        files = [(target / e["path"], e["path"]) for e in ref.manifest.get("files", [])]
        digest, _ = _fingerprint(files)
        if digest != ref.digest:
            raise ArtifactError(f"Artifact '{name}' digest mismatch after download")

        log.debug("downloaded artifact %s/%s into %s", run_id, name, target)
        return ref

    def list(self, run_id: str) -> List[ArtifactRef]:
        d = self.root / run_id
        if not d.is_dir():
            return []
        out = []
        for man in sorted(d.glob("*.manifest.json")):
            out.append(self.get(run_id, man.name[: -len(".manifest.json")]))
        return out

    def runs(self) -> List[str]:
        """Run ids, newest first."""
        return [p.name for p in newest_dirs(self.root)]

    def prune(self, keep: int = 5) -> List[str]:
        """Keep only the newest N run directories. Returns removed run ids."""
        return prune_dirs(self.root, keep)
