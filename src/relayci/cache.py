# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .errors import CacheAccessError

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed, append-only cache:
#   cache_key = caller-defined string, usually
#       "<prefix>-${{ runner.os }}-${{ matrix.arch }}-${{ hashFiles('Cargo.lock') }}"
#
# Cache artifact:
#   a tar.gz with one top-level member per declared path ("0", "1/...", ...)
#   plus a manifest.json describing the declared paths.
#
# A key maps to at most one payload. The first successful save wins; later
# saves for the same key are no-ops. The store never interprets keys.
#
# Example usage in the scheduler (high-level):
#   store = CacheStore(FileSystemBackend(".relayci/cache"))
#   entry = store.lookup(key)
#   if entry:
#       store.restore(entry, [workdir / p for p in entry.paths])
#   else:
#       run_steps()
#       store.save(key, [workdir / p for p in paths], declared=paths)
#
# ---------------------------------------------------------------------

log = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


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
            # an unusable pattern never excludes anything
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


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "**/Cargo.toml", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except (ValueError, NotImplementedError):
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


def hash_files(
    root: str | Path,
    patterns: List[str],
    *,
    excludes: Optional[List[str]] = None,
) -> str:
    """
    Hash the matched file set deterministically (relative path + contents).

    Returns "" when nothing matches, like hashFiles() in hosted CI.
    """
    root_p = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    # a file reached through several patterns counts once
    fps: Dict[str, str] = {}
    for p in _resolve_globs(root_p, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root_p)
            if rel in fps or _matches_any_glob(rel, exclude_globs):
                continue
            fps[rel] = _hash_file_contents(f)

    if not fps:
        return ""
    ordered = sorted(fps.items())  # stable ordering by relpath
    return _sha256_str(_json_dumps_stable(ordered))


def compose_key(prefix: str, *parts: object) -> str:
    """Join a logical prefix with fingerprint parts: compose_key("cargo", "Linux", digest)."""
    return "-".join([prefix, *(str(p) for p in parts if p not in (None, ""))])


# ---------------------------------------------------------------------
# Entries & backends
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    paths: Tuple[str, ...]
    size: int = 0
    created_at: float = 0.0
    location: str = ""
    manifest: Dict = field(default_factory=dict, compare=False, hash=False)


class CacheBackend(Protocol):
    """Durable key/value storage with put-if-absent and read-after-write per key."""

    def get_manifest(self, key: str) -> Optional[Dict]: ...

    def read(self, key: str) -> bytes: ...

    def put_if_absent(self, key: str, payload: bytes, manifest: Dict) -> bool: ...

    def location(self, key: str) -> str: ...


class FileSystemBackend:
    """
    File-based backend:
      root/
        <digest[:2]>/
          <digest>.<payload-sha[:16]>.tar.gz
          <digest>.manifest.json

    where digest = sha256(key), so any key string is a safe file name. The
    manifest is the commit point: it names its artifact, and a key exists
    exactly when its manifest does.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _base(self, key: str) -> Path:
        digest = _sha256_str(key)
        d = self.root / digest[:2]
        d.mkdir(parents=True, exist_ok=True)
        return d / digest

    def manifest_path(self, key: str) -> Path:
        return self._base(key).with_suffix(".manifest.json")

    def artifact_path(self, key: str) -> Path:
        """The artifact named by the committed manifest of ``key``."""
        manifest = self.get_manifest(key)
        if manifest is None or not manifest.get("artifact"):
            raise FileNotFoundError(f"no committed artifact for {key!r}")
        return self._base(key).with_name(str(manifest["artifact"]))

    def location(self, key: str) -> str:
        return str(self._base(key))

    def get_manifest(self, key: str) -> Optional[Dict]:
        man = self.manifest_path(key)
        if not man.exists():
            return None
        return json.loads(man.read_text(encoding="utf-8"))

    def read(self, key: str) -> bytes:
        return self.artifact_path(key).read_bytes()

    def put_if_absent(self, key: str, payload: bytes, manifest: Dict) -> bool:
        base = self._base(key)
        man = self.manifest_path(key)
        if man.exists():
            return False
        art = base.with_name(f"{base.name}.{_sha256_bytes(payload)[:16]}.tar.gz")
        suffix = f".{os.getpid()}.{threading.get_ident()}.tmp"
        tmp_art = art.with_name(art.name + suffix)
        tmp_man = man.with_name(man.name + suffix)
        record = dict(manifest, artifact=art.name)
        try:
            tmp_art.write_bytes(payload)
            # same name means same bytes, so replacing another writer's copy is harmless
            tmp_art.replace(art)
            tmp_man.write_text(json.dumps(record, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            try:
                # link() refuses to overwrite: the first manifest wins, even across processes
                os.link(tmp_man, man)
            except FileExistsError:
                winner = self.get_manifest(key) or {}
                if winner.get("artifact") != art.name:
                    art.unlink(missing_ok=True)
                return False
            return True
        finally:
            tmp_art.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)


class MemoryBackend:
    """In-process backend; used by tests and when embedding the engine."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._manifests: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def location(self, key: str) -> str:
        return f"memory://{_sha256_str(key)}"

    def get_manifest(self, key: str) -> Optional[Dict]:
        with self._lock:
            m = self._manifests.get(key)
            return dict(m) if m is not None else None

    def read(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise FileNotFoundError(key)
            return self._blobs[key]

    def put_if_absent(self, key: str, payload: bytes, manifest: Dict) -> bool:
        with self._lock:
            if key in self._blobs:
                return False
            self._blobs[key] = payload
            self._manifests[key] = dict(manifest)
            return True

    def __len__(self) -> int:
        return len(self._blobs)


# ---------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------

def _walk_tree(root: Path) -> Iterable[Path]:
    # deterministic, and symlinks are yielded rather than followed
    for base, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in dirnames + sorted(filenames):
            yield Path(base) / name


def _pack(sources: Sequence[Path], *, exclude_globs: List[str]) -> Tuple[bytes, List[str]]:
    """
    Pack each source under its index: a file becomes member "<i>", a
    directory becomes "<i>" plus "<i>/<rel>" for everything below it.
    Symlinks stay symlinks, permission bits and empty directories are kept.
    Returns (tar.gz bytes, kinds).
    """
    buf = io.BytesIO()
    kinds: List[str] = []
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for i, src in enumerate(sources):
            src = src.expanduser()
            if src.is_file():
                kinds.append("file")
                tar.add(str(src), arcname=str(i), recursive=False)
            elif src.is_dir():
                kinds.append("dir")
                src = src.resolve()
                tar.add(str(src), arcname=str(i), recursive=False)
                for p in _walk_tree(src):
                    rel = p.relative_to(src).as_posix()
                    if _matches_any_glob(rel, exclude_globs):
                        continue
                    tar.add(str(p), arcname=f"{i}/{rel}", recursive=False)
            else:
                kinds.append("missing")
    return buf.getvalue(), kinds


def _clear(dest: Path) -> None:
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    elif dest.is_dir():
        shutil.rmtree(dest)


def _unpack(payload: bytes, targets: Sequence[Path]) -> None:
    dir_modes: List[Tuple[Path, int]] = []
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        for member in tar.getmembers():
            head, _, rel = member.name.partition("/")
            idx = int(head)
            if idx >= len(targets):
                raise CacheAccessError(f"archive member {member.name!r} has no target path")
            target = targets[idx].expanduser()
            dest = target / rel if rel else target
            if rel:
                if ".." in Path(rel).parts or Path(rel).is_absolute():
                    raise CacheAccessError(f"refusing to extract {member.name!r} outside its target")
                target.mkdir(parents=True, exist_ok=True)
                dest.parent.mkdir(parents=True, exist_ok=True)
                # a restored symlink must not redirect later members elsewhere
                if not dest.parent.resolve().is_relative_to(target.resolve()):
                    raise CacheAccessError(f"refusing to extract {member.name!r} through a symlink")

            if member.isdir():
                if dest.is_symlink() or dest.is_file():
                    dest.unlink()
                dest.mkdir(parents=True, exist_ok=True)
                dir_modes.append((dest, member.mode & 0o7777))
            elif member.issym():
                dest.parent.mkdir(parents=True, exist_ok=True)
                _clear(dest)
                os.symlink(member.linkname, dest)
            elif member.isfile():
                src = tar.extractfile(member)
                if src is None:
                    raise CacheAccessError(f"archive member {member.name!r} is unreadable")
                dest.parent.mkdir(parents=True, exist_ok=True)
                _clear(dest)
                with src, dest.open("wb") as out:
                    shutil.copyfileobj(src, out)
                os.chmod(dest, member.mode & 0o7777)
    # deepest first, so a read-only directory does not block its children
    for path, mode in reversed(dir_modes):
        os.chmod(path, mode)


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """
    Key-opaque cache over a backend.

    lookup/save may be called concurrently from every execution slot; a
    per-key lock makes the check-then-save sequence atomic.
    """

    def __init__(
        self,
        backend: CacheBackend | str | Path | None = None,
        *,
        excludes: Optional[List[str]] = None,
    ):
        if backend is None or isinstance(backend, (str, Path)):
            backend = FileSystemBackend(backend or DEFAULT_CACHE_DIR)
        self.backend = backend
        self.exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _entry(self, key: str, manifest: Dict) -> CacheEntry:
        return CacheEntry(
            key=key,
            paths=tuple(manifest.get("paths", [])),
            size=int(manifest.get("size", 0)),
            created_at=float(manifest.get("created_at", 0.0)),
            location=self.backend.location(key),
            manifest=manifest,
        )

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return the entry stored under ``key``, or None on a miss."""
        try:
            manifest = self.backend.get_manifest(key)
        except (OSError, ValueError) as e:
            raise CacheAccessError(f"lookup of {key!r} failed: {e}") from e
        if manifest is None:
            return None
        return self._entry(key, manifest)

    def restore(self, entry: CacheEntry, target_paths: Sequence[str | Path]) -> None:
        """
        Materialize the payload of ``entry``; target_paths[i] receives entry.paths[i].

        Raises CacheAccessError for a missing or corrupt payload.
        """
        targets = [Path(p) for p in target_paths]
        if len(targets) != len(entry.paths):
            raise CacheAccessError(
                f"entry {entry.key!r} holds {len(entry.paths)} path(s), got {len(targets)} target(s)"
            )
        try:
            payload = self.backend.read(entry.key)
        except (OSError, ValueError) as e:
            raise CacheAccessError(f"payload for {entry.key!r} unavailable: {e}") from e

        expected = entry.manifest.get("sha256")
        if expected and _sha256_bytes(payload) != expected:
            raise CacheAccessError(f"payload for {entry.key!r} is corrupt (checksum mismatch)")

        try:
            _unpack(payload, targets)
        except (tarfile.TarError, OSError, EOFError, ValueError) as e:
            raise CacheAccessError(f"restore of {entry.key!r} failed: {e}") from e
        log.debug("restored cache %s into %s", entry.key, [str(t) for t in targets])

    def save(
        self,
        key: str,
        source_paths: Sequence[str | Path],
        *,
        declared: Optional[Sequence[str]] = None,
    ) -> Optional[CacheEntry]:
        """
        Capture ``source_paths`` under ``key`` unless the key already exists.

        Returns the new entry, or None when the key was already taken (the
        earlier payload is kept) or nothing to capture exists.
        """
        sources = [Path(p) for p in source_paths]
        declared_paths = [str(p) for p in (declared if declared is not None else source_paths)]

        with self._key_lock(key):
            if self.lookup(key) is not None:
                log.debug("cache key %s already stored; save is a no-op", key)
                return None

            try:
                payload, kinds = _pack(sources, exclude_globs=self.exclude_globs)
            except OSError as e:
                raise CacheAccessError(f"could not archive paths for {key!r}: {e}") from e
            if all(k == "missing" for k in kinds):
                log.warning("cache %s: none of %s exist, nothing saved", key, declared_paths)
                return None

            manifest = {
                "key": key,
                "paths": declared_paths,
                "kinds": kinds,
                "size": len(payload),
                "sha256": _sha256_bytes(payload),
                "created_at": time.time(),
            }
            try:
                stored = self.backend.put_if_absent(key, payload, manifest)
            except OSError as e:
                raise CacheAccessError(f"save of {key!r} failed: {e}") from e
            if not stored:
                return None
            return self._entry(key, manifest)
