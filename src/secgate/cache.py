# cache.py
from __future__ import annotations

import hashlib
import json
import os
import platform
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Sequence

from filelock import FileLock

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Key-addressed blob cache shared by every job of every run:
#
#   key = "<namespace>-<OS>-<hash_files(declared inputs)>"
#
# restore(key, restore_keys) tries the exact key first, then each
# restore-key prefix in declared order (newest matching entry wins).
# save(key, paths) writes unconditionally; the caller only saves when the
# restore was not an exact hit, so a hit never rewrites an entry.
#
# Layout:
#   root/
#     index.json             key -> {file, size, created, accessed, seq}
#     index.lock             held around every index read-modify-write
#     blobs/<sha(key)>.tar.gz
#
# Capacity is enforced after each save by dropping least recently used
# entries. An evicted entry is just a miss on the next restore.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".secgate/cache"
DEFAULT_CAPACITY_BYTES = 10 * 1024 * 1024 * 1024
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    path: Path
    size: int
    created: float
    accessed: float


@dataclass(frozen=True)
class CacheResult:
    """Typed outcome of a restore; steps branch on this, never on strings."""
    key: str
    hit: bool
    exact: bool = False
    matched_key: str | None = None
    paths: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def miss(cls, key: str, paths: Sequence[str] = ()) -> "CacheResult":
        return cls(key=key, hit=False, paths=tuple(paths))


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _tmp_tag() -> str:
    # unique per writer across threads and processes
    return f"{os.getpid()}.{threading.get_ident()}"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


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
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "package-lock.json"
      - dir path:  "node_modules/"
      - glob:      "src/**", "tests/**/*.py"
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


def _expand_files(root: Path, patterns: Iterable[str], excludes: List[str]) -> List[Path]:
    files: Dict[str, Path] = {}
    for p in _resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            rel = _relpath(f, root)
            if not _matches_any_glob(rel, excludes):
                files[rel] = f
    return [files[rel] for rel in sorted(files)]


def hash_files(root: str | Path, patterns: Iterable[str]) -> str:
    """
    Hash of the declared input file set, like the workflow `hashFiles()`
    function: sha256 over the per-file sha256 digests in path order.
    Empty string when nothing matches.
    """
    root_p = Path(root).resolve()
    files = _expand_files(root_p, patterns, DEFAULT_CACHE_EXCLUDES)
    if not files:
        return ""
    h = hashlib.sha256()
    for f in files:
        h.update(bytes.fromhex(_hash_file_contents(f)))
    return h.hexdigest()


def runner_os() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system)


def cache_key(namespace: str, digest: str = "", *, os_name: str | None = None, include_os: bool = True) -> str:
    """Format `<namespace>-<OS>-<digest>` (or `<namespace>-<digest>` without OS)."""
    parts = [namespace]
    if include_os:
        parts.append(os_name or runner_os())
    parts.append(digest)
    return "-".join(parts)


def _tar_add_path(tar: tarfile.TarFile, root: Path, src: Path) -> int:
    """Add src (file/dir) into tar under its path relative to root."""
    src = src.resolve()
    if not src.exists():
        return 0
    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        tar.add(str(f), arcname=_relpath(f, root), recursive=False)
    return len(files)


def _extract(archive: BinaryIO, dest: Path) -> None:
    with tarfile.open(fileobj=archive, mode="r:gz") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), filter="data")
        else:
            tar.extractall(path=str(dest))


class CacheStore:
    """
    File-based cache store shared by concurrent jobs and by separate secgate
    processes pointed at the same root. Index reads and writes are serialized
    by a file lock; archives are written to a temp file and then renamed, so a
    restore never sees a half-written blob. A restore opens its blob while it
    holds the lock, so a concurrent eviction cannot pull it away mid-extract.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, capacity_bytes: int = DEFAULT_CAPACITY_BYTES):
        self.root = Path(root).resolve()
        self.capacity_bytes = capacity_bytes
        (self.root / "blobs").mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.root / "index.lock"))

    # ---- index ----

    @property
    def _index_path(self) -> Path:
        return self.root / "index.json"

    def _load_index(self) -> Dict[str, Dict]:
        if not self._index_path.exists():
            return {}
        return json.loads(self._index_path.read_text(encoding="utf-8"))

    def _write_index(self, index: Dict[str, Dict]) -> None:
        tmp = self._index_path.with_name(f"index.json.{_tmp_tag()}.tmp")
        tmp.write_text(json.dumps(index, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(self._index_path)

    def _blob_path(self, key: str) -> Path:
        return self.root / "blobs" / f"{_sha256_str(key)}.tar.gz"

    def _entry(self, key: str, meta: Dict) -> CacheEntry:
        return CacheEntry(
            key=key,
            path=self.root / "blobs" / meta["file"],
            size=meta["size"],
            created=meta["created"],
            accessed=meta["accessed"],
        )

    def _lookup(self, index: Dict[str, Dict], key: str, restore_keys: Sequence[str]) -> Optional[str]:
        if key in index:
            return key
        for prefix in restore_keys:
            candidates = [k for k in index if k.startswith(prefix)]
            if candidates:
                return max(candidates, key=lambda k: (index[k]["created"], index[k]["seq"]))
        return None

    # ---- public API ----

    def restore(
        self,
        key: str,
        restore_keys: Sequence[str] = (),
        *,
        dest: str | Path = ".",
        paths: Sequence[str] = (),
    ) -> CacheResult:
        """
        Restore the best matching entry into dest. A miss is a result, not an
        error; so is an entry whose blob vanished.
        """
        with self._lock:
            index = self._load_index()
            matched = self._lookup(index, key, restore_keys)
            if matched is None:
                return CacheResult.miss(key, paths)
            try:
                archive = (self.root / "blobs" / index[matched]["file"]).open("rb")
            except FileNotFoundError:
                del index[matched]
                self._write_index(index)
                return CacheResult.miss(key, paths)
            index[matched]["accessed"] = time.time()
            self._write_index(index)

        # the open handle outlives an unlink by a concurrent save's eviction
        dest_p = Path(dest).resolve()
        dest_p.mkdir(parents=True, exist_ok=True)
        with archive:
            _extract(archive, dest_p)
        return CacheResult(
            key=key,
            hit=True,
            exact=matched == key,
            matched_key=matched,
            paths=tuple(paths),
        )

    def save(self, key: str, paths: Sequence[str], *, root: str | Path = ".") -> Optional[CacheEntry]:
        """
        Archive `paths` (relative to root) under `key`, overwriting any entry
        with the same key. Returns None when none of the paths exist.
        """
        root_p = Path(root).resolve()
        for entry in paths:
            if Path(entry).is_absolute():
                raise ValueError(f"Cache paths must be relative to the job workspace: {entry}")

        blob = self._blob_path(key)
        tmp = blob.with_name(f"{blob.name}.{_tmp_tag()}.tmp")
        try:
            count = 0
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    count += _tar_add_path(tar, root_p, root_p / entry)
            if count == 0:
                return None
            tmp.replace(blob)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        now = time.time()
        with self._lock:
            index = self._load_index()
            seq = max((m.get("seq", 0) for m in index.values()), default=0) + 1
            index[key] = {
                "file": blob.name,
                "size": blob.stat().st_size,
                "created": now,
                "accessed": now,
                "seq": seq,
            }
            self._evict(index)
            self._write_index(index)
            meta = index.get(key)

        if meta is None:
            # larger than the whole capacity
            return None
        return self._entry(key, meta)

    def _evict(self, index: Dict[str, Dict]) -> None:
        """Drop least recently used entries until the index fits the capacity."""
        total = sum(m["size"] for m in index.values())
        for k in sorted(index, key=lambda k: (index[k]["accessed"], index[k]["seq"])):
            if total <= self.capacity_bytes:
                break
            meta = index.pop(k)
            total -= meta["size"]
            (self.root / "blobs" / meta["file"]).unlink(missing_ok=True)

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            index = self._load_index()
        return sorted(
            (self._entry(k, m) for k, m in index.items()),
            key=lambda e: e.created,
            reverse=True,
        )

    def clear(self) -> int:
        with self._lock:
            index = self._load_index()
            shutil.rmtree(self.root / "blobs", ignore_errors=True)
            (self.root / "blobs").mkdir(parents=True, exist_ok=True)
            self._write_index({})
        return len(index)
