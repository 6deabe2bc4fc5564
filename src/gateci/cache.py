# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import tarfile
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CacheUnavailable
from .model import CacheEntry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed caching:
#   cache_key = prefix + hash(
#       declared cache paths,
#       contents of declared key files (lock files, globs),
#       optional salt (e.g. toolchain version)
#   )
#
# The step that asks for the key never contributes to it: a restore step and a
# save step declaring the same inputs always compute the same key.
#
# Cache value:
#   a tar.gz of the declared paths, relative to the workspace root.
#
# Storage failures raise CacheUnavailable; safe_get/safe_put turn them into a miss.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".gateci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".gateci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]
KEY_FORMAT_VERSION = 1


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand patterns into concrete paths under `root`.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "**/Cargo.toml"
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
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _fingerprint_files(root: Path, patterns: Iterable[str], *, excludes: List[str]) -> List[Tuple[str, str]]:
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            try:
                rel = _relpath(f, root)
            except ValueError:
                # key file outside the workspace: identify it by absolute path
                rel = f.resolve().as_posix()
            if _matches_any_glob(rel, excludes):
                continue
            fps.append((rel, _hash_file_contents(f)))
    fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    return fps


def compute_cache_key(
    root: str | Path,
    *,
    paths: Iterable[str],
    key_files: Iterable[str],
    prefix: str = "gateci",
    salt: Optional[Dict[str, str]] = None,
) -> str:
    """
    Derive a cache key from the contents of `key_files` and the declared `paths`.

    Identical inputs always yield the identical key; nothing about the
    requesting step is mixed in.
    """
    root_p = Path(root).resolve()
    payload = {
        "v": KEY_FORMAT_VERSION,  # bump this if you change hashing format
        "paths": sorted(paths),
        "files": _fingerprint_files(root_p, key_files, excludes=DEFAULT_CACHE_EXCLUDES),
        "salt": dict(salt or {}),
    }
    return f"{prefix}-{_sha256_str(_json_dumps_stable(payload))}"


# ---------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------

def _inside(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _archive_entries(root: Path, paths: Iterable[str]) -> List[Tuple[Path, str]]:
    """
    (source, arcname) pairs for every file under `paths`.

    Arcnames are the workspace-relative names as declared, so a symlink is
    stored under its own name holding the content it points at. Links that
    leave the workspace, or dangle, are skipped.
    """
    out: List[Tuple[Path, str]] = []
    for entry in paths:
        src = Path(os.path.normpath(root / entry))
        if not _inside(src, root) or not _inside(src.resolve(), root):
            if src.exists():
                logger.warning("not caching %s: outside the workspace", entry)
            continue
        if not src.exists():
            continue
        files = [src] if src.is_file() else _iter_files_under(src)
        for f in files:
            real = f.resolve()
            if not _inside(real, root):
                logger.warning("not caching %s: links outside the workspace", f.relative_to(root).as_posix())
                continue
            out.append((real, f.relative_to(root).as_posix()))
    return out


def pack_paths(root: str | Path, paths: Iterable[str], *, excludes: Optional[List[str]] = None) -> Optional[bytes]:
    """
    Archive `paths` (relative to `root`) into an in-memory tar.gz.
    Returns None when none of the paths exist.
    """
    root_p = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    entries = [(src, rel) for src, rel in _archive_entries(root_p, paths) if not _matches_any_glob(rel, exclude_globs)]
    if not entries:
        return None

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for src, rel in entries:
            # add the link target so every member is a regular file
            tar.add(str(src), arcname=rel, recursive=False)
    return buf.getvalue()


def _safe_members(tar: tarfile.TarFile, root: Path) -> List[tarfile.TarInfo]:
    members = []
    for m in tar.getmembers():
        if not (m.isfile() or m.isdir()):
            raise ValueError(f"refusing to extract non-regular member: {m.name}")
        target = (root / m.name).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"refusing to extract outside the workspace: {m.name}")
        members.append(m)
    return members


def unpack_archive(root: str | Path, blob: bytes) -> int:
    """Extract a tar.gz produced by `pack_paths` into `root`. Returns the number of members."""
    root_p = Path(root).resolve()
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = _safe_members(tar, root_p)
        for m in members:
            tar.extract(m, path=str(root_p), filter="data")
    return len(members)


# ---------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------

class CacheProvider:
    """
    Key/value store of build artifacts.

    get() returns None on a miss; put() upserts atomically (last write wins).
    Backend failures raise CacheUnavailable; steps go through safe_get() and
    safe_put(), which log them and behave as a miss.
    """

    def get(self, key: str) -> Optional[bytes]:
        entry = self.entry(key)
        return entry.value if entry else None

    def entry(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def put(self, key: str, value: bytes) -> None:
        raise NotImplementedError


class MemoryCacheProvider(CacheProvider):
    """In-process provider, safe for concurrent runs sharing one instance."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: bytes) -> None:
        entry = CacheEntry(key=key, value=bytes(value), created_at=datetime.now(timezone.utc))
        with self._lock:
            self._entries[key] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileCacheProvider(CacheProvider):
    """
    File-based cache store, one file per key:
      root/
        <sha256(key)[:2]>/
          <sha256(key)>.blob

    Writes go to a temp file in the same directory followed by os.replace, so
    concurrent writers to one key leave exactly one complete blob behind.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, max_age_seconds: float | None = None):
        self.root = Path(root).resolve()
        self.max_age_seconds = max_age_seconds

    def blob_path(self, key: str) -> Path:
        digest = _sha256_str(key)
        return self.root / digest[:2] / f"{digest}.blob"

    def _expired(self, mtime: float) -> bool:
        if self.max_age_seconds is None:
            return False
        return (time.time() - mtime) > self.max_age_seconds

    def entry(self, key: str) -> Optional[CacheEntry]:
        path = self.blob_path(key)
        try:
            stat = path.stat()
            if self._expired(stat.st_mtime):
                logger.debug("cache entry expired: %s", key)
                return None
            value = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailable(f"cannot read cache entry: {e}", details={"key": key, "path": str(path)}) from e
        created = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        return CacheEntry(key=key, value=value, created_at=created)

    def put(self, key: str, value: bytes) -> None:
        path = self.blob_path(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise CacheUnavailable(f"cannot write cache entry: {e}", details={"key": key, "path": str(path)}) from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    def prune(self, keep: int = 3) -> int:
        """
        Keep only the newest N entries. Uses file mtime as "newest".
        Returns the number of entries removed.
        """
        if not self.root.exists():
            return 0
        blobs = sorted(self.root.glob("*/*.blob"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = 0
        for p in blobs[max(keep, 0):]:
            p.unlink(missing_ok=True)
            removed += 1
        return removed


def safe_get(provider: CacheProvider, key: str) -> Optional[bytes]:
    """get() that turns any provider failure into a logged miss."""
    try:
        return provider.get(key)
    except (CacheUnavailable, OSError) as e:
        logger.warning("cache unavailable, treating %s as a miss: %s", key, e)
        return None


def safe_put(provider: CacheProvider, key: str, value: bytes) -> bool:
    """put() that logs and swallows provider failures. Returns True if the write was handed off."""
    try:
        provider.put(key, value)
        return True
    except (CacheUnavailable, OSError) as e:
        logger.warning("cache unavailable, dropping write for %s: %s", key, e)
        return False
