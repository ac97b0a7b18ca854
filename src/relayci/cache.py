# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import subprocess
import tarfile
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CacheConsistencyError
from .model import Artifact, Job

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# fingerprint = hash(
#     job.name,
#     step commands + cwd,
#     job.env,
#     required tools + their versions, packages, environment image,
#     contents of declared input files/dirs (globs),
#     image build settings, cache_key_extra, caller extra (e.g. platform)
# )
#
# Never wall-clock, never run id: identical inputs across Runs must hit.
#
# Layout:
#   root/
#     objects/<fp[:2]>/<fp>.blob   content (immutable)
#     objects/<fp[:2]>/<fp>.json   Artifact metadata
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]
FINGERPRINT_VERSION = 2
LOCK_STRIPES = 64


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        try:
            if rel_path.match(g):
                return True
        except ValueError:
            # a malformed pattern never matches
            continue
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "src/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(repo_root.glob(pat))
        except ValueError:
            matches = []
        out.extend(m for m in matches if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _collect_files(repo_root: Path, patterns: List[str], excludes: List[str]) -> List[Tuple[str, Path]]:
    files: Dict[str, Path] = {}
    for p in _resolve_globs(repo_root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p)) if p.is_dir() else []
        for f in candidates:
            rel = _relpath(f, repo_root)
            if _matches_any_glob(rel, excludes):
                continue
            files[rel] = f
    return sorted(files.items())


def _tool_version(tool: str) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    candidates = [
        [tool, "--version"],
        [tool, "-V"],
        [tool, "version"],
    ]
    for cmd in candidates:
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False)
        except OSError:
            continue
        out = (completed.stdout or "").strip()
        err = (completed.stderr or "").strip()
        text = out if out else err
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def _image_id(image: str, docker: str = "docker") -> Optional[str]:
    """
    Local id of a container image, so a floating tag (rust:1-bookworm) that
    moved since the entry was written gives a new fingerprint. None when the
    image is not pulled yet or docker is unavailable.
    """
    try:
        completed = subprocess.run(
            [docker, "image", "inspect", "--format", "{{.Id}}", image],
            text=True,
            capture_output=True,
            check=False,
        )
    except OSError:
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout.strip() or None


def _hash_inputs(repo_root: Path, inputs: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Hash the declared input set deterministically (relative path, content
    digest and size of every file).
    """
    file_fps = [
        (rel, _hash_file_contents(f), f.stat().st_size)
        for rel, f in _collect_files(repo_root, inputs, excludes)
    ]
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_fingerprint(
    job: Job,
    *,
    repo_root: str | Path = ".",
    extra: Optional[Dict[str, str]] = None,
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (fingerprint, manifest) where the manifest explains what went
    into the fingerprint.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES)
    if excludes:
        exclude_globs.extend(excludes)

    steps = [{"name": s.name, "run": s.run, "cwd": s.cwd or "."} for s in job.steps]

    requires = list(job.requires)
    in_container = job.environment.kind == "container" and bool(job.environment.image)
    tool_versions: Dict[str, Optional[str]] = {}
    if isinstance(job.tool_versions, dict):
        # user can pin their own stable values
        for t in requires:
            tool_versions[t] = job.tool_versions.get(t)
    elif not in_container:
        for t in requires:
            tool_versions[t] = _tool_version(t)
    # inside a container the tools come from the image, its id stands for them
    image_id = _image_id(job.environment.image) if in_container else None

    inputs_hash, inputs_manifest = _hash_inputs(root, list(job.inputs), excludes=exclude_globs)

    image = None
    if job.image is not None:
        image = {
            "name": job.image.name,
            "context": job.image.context,
            "file": job.image.file,
            "target": job.image.target,
            "build_args": dict(job.image.build_args),
        }
        dockerfile = root / job.image.context / job.image.file
        if dockerfile.is_file():
            image["file_hash"] = _hash_file_contents(dockerfile)

    payload = {
        "v": FINGERPRINT_VERSION,
        "job": job.name,
        "steps": steps,
        "env": dict(job.env),
        "requires": requires,
        "tool_versions": tool_versions,
        "packages": list(job.packages),
        "environment": {
            "kind": job.environment.kind,
            "image": job.environment.image,
            "image_id": image_id,
        },
        "inputs_hash": inputs_hash,
        "outputs": list(job.outputs),
        "image": image,
        "cache_key_extra": dict(job.cache_key_extra),
        "extra": dict(extra or {}),
    }

    fingerprint = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "fingerprint": fingerprint,
        "payload": payload,
        "inputs": inputs_manifest,
        "excludes": exclude_globs,
    }
    return fingerprint, manifest


# ---------------------------------------------------------------------
# Output bundles
# ---------------------------------------------------------------------

def pack_paths(
    repo_root: str | Path,
    paths: List[str],
    *,
    excludes: Optional[List[str]] = None,
) -> Tuple[bytes, List[str]]:
    """
    Pack files under `paths` into an uncompressed tar with normalised
    metadata, so identical files always give identical bytes.

    Returns (content, missing_paths).
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    missing = [p for p in paths if not _resolve_globs(root, [p])]

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for rel, f in _collect_files(root, paths, exclude_globs):
            info = tarfile.TarInfo(name=rel)
            info.size = f.stat().st_size
            info.mode = 0o755 if os.access(f, os.X_OK) else 0o644
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            with f.open("rb") as fh:
                tar.addfile(info, fh)
    return buf.getvalue(), missing


def unpack_into(content: bytes, repo_root: str | Path) -> List[str]:
    """Restore a bundle produced by pack_paths. Returns the restored paths."""
    root = Path(repo_root).resolve()
    with tarfile.open(fileobj=io.BytesIO(content), mode="r:") as tar:
        names = tar.getnames()
        tar.extractall(path=str(root), filter="data")
    return names


# ---------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------

class EvictionPolicy:
    """
    Hook deciding which entries leave the cache. It never changes what
    lookup/store mean; it only names victims after a store.
    """

    def on_access(self, fingerprint: str) -> None:
        pass

    def on_store(self, fingerprint: str, size: int) -> None:
        pass

    def forget(self, fingerprint: str) -> None:
        pass

    def victims(self) -> List[str]:
        return []


class NoEviction(EvictionPolicy):
    pass


class LRUEviction(EvictionPolicy):
    """Keep at most `max_entries` artifacts, dropping the least recently used."""

    def __init__(self, max_entries: int):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._order: "OrderedDict[str, int]" = OrderedDict()
        self._lock = threading.Lock()

    def on_access(self, fingerprint: str) -> None:
        with self._lock:
            if fingerprint in self._order:
                self._order.move_to_end(fingerprint)

    def on_store(self, fingerprint: str, size: int) -> None:
        with self._lock:
            self._order[fingerprint] = size
            self._order.move_to_end(fingerprint)

    def forget(self, fingerprint: str) -> None:
        with self._lock:
            self._order.pop(fingerprint, None)

    def victims(self) -> List[str]:
        with self._lock:
            excess = len(self._order) - self.max_entries
            return list(self._order)[:excess] if excess > 0 else []


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class ArtifactCache:
    """
    Content-addressed, file-based artifact store keyed by fingerprint.

      - lookup(fp)  -> Artifact | None
      - store(fp, content, ...) -> Artifact
          identical bytes again: no-op, returns the stored Artifact
          different bytes:       CacheConsistencyError

    Stores for the same key are serialised in-process with a striped key lock;
    the blob itself is published with os.link, which fails if another
    process got there first, so nothing is ever overwritten.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, eviction: Optional[EvictionPolicy] = None):
        self.root = Path(root).resolve()
        (self.root / "objects").mkdir(parents=True, exist_ok=True)
        self.eviction = eviction or NoEviction()
        self.write_count = 0
        # striped: a bounded set of locks whatever the number of keys
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

        existing = sorted(self._meta_files(), key=lambda p: p.stat().st_mtime)
        for meta in existing:
            art = self._load_meta(meta)
            if art is not None:
                self.eviction.on_store(art.fingerprint, art.size)

    # -- paths --------------------------------------------------------

    def _dir(self, fingerprint: str) -> Path:
        return self.root / "objects" / fingerprint[:2]

    def blob_path(self, fingerprint: str) -> Path:
        return self._dir(fingerprint) / f"{fingerprint}.blob"

    def meta_path(self, fingerprint: str) -> Path:
        return self._dir(fingerprint) / f"{fingerprint}.json"

    def _meta_files(self) -> Iterable[Path]:
        return (self.root / "objects").glob("*/*.json")

    def _key_lock(self, fingerprint: str) -> threading.Lock:
        return self._locks[hash(fingerprint) % LOCK_STRIPES]

    @staticmethod
    def _load_meta(path: Path) -> Optional[Artifact]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return Artifact(**data)

    # -- contract -----------------------------------------------------

    def lookup(self, fingerprint: str) -> Optional[Artifact]:
        meta = self.meta_path(fingerprint)
        if not meta.exists() or not self.blob_path(fingerprint).exists():
            return None
        art = self._load_meta(meta)
        if art is not None:
            self.eviction.on_access(fingerprint)
        return art

    def store(
        self,
        fingerprint: str,
        content: bytes,
        *,
        name: str,
        producer: str,
        kind: str = "bundle",
    ) -> Artifact:
        digest = _sha256_bytes(content)

        with self._key_lock(fingerprint):
            existing = self.lookup(fingerprint)
            if existing is not None:
                if existing.digest != digest:
                    raise CacheConsistencyError(
                        fingerprint, existing=existing.digest, offered=digest, job=producer
                    )
                return existing

            blob = self.blob_path(fingerprint)
            blob.parent.mkdir(parents=True, exist_ok=True)
            tmp = blob.with_name(f".{blob.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            try:
                tmp.write_bytes(content)
                try:
                    os.link(tmp, blob)
                    self.write_count += 1
                except FileExistsError:
                    # another process published this key first
                    other = _hash_file_contents(blob)
                    if other != digest:
                        raise CacheConsistencyError(
                            fingerprint, existing=other, offered=digest, job=producer
                        )
            finally:
                tmp.unlink(missing_ok=True)

            artifact = Artifact(
                name=name,
                fingerprint=fingerprint,
                digest=digest,
                size=len(content),
                producer=producer,
                kind=kind,
            )
            meta = self.meta_path(fingerprint)
            meta_tmp = meta.with_name(f".{meta.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            meta_tmp.write_text(
                json.dumps(artifact.__dict__, sort_keys=True, indent=2),
                encoding="utf-8",
            )
            meta_tmp.replace(meta)

        self.eviction.on_store(fingerprint, artifact.size)
        for victim in self.eviction.victims():
            if victim != fingerprint:
                self.evict(victim)
        return artifact

    def read(self, artifact: Artifact) -> bytes:
        return self.blob_path(artifact.fingerprint).read_bytes()

    def entries(self) -> List[Artifact]:
        out = []
        for meta in sorted(self._meta_files()):
            art = self._load_meta(meta)
            if art is not None:
                out.append(art)
        return out

    def evict(self, fingerprint: str) -> None:
        with self._key_lock(fingerprint):
            self.meta_path(fingerprint).unlink(missing_ok=True)
            self.blob_path(fingerprint).unlink(missing_ok=True)
        self.eviction.forget(fingerprint)

