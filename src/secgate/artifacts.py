# artifacts.py
from __future__ import annotations

import json
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence

from .errors import ArtifactNotFound

MANIFEST = "manifest.json"


@dataclass(frozen=True)
class Artifact:
    name: str
    job: str
    files: tuple[str, ...]
    uploaded_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "job": self.job,
            "files": list(self.files),
            "uploaded_at": self.uploaded_at,
        }


def _safe_name(name: str) -> str:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"Invalid artifact name: {name!r}")
    return name


def collect_files(paths: Sequence[str], root: str | Path = ".") -> Dict[str, Path]:
    """
    Map stored name -> source file for `paths` relative to root.
    Directories are stored with their contents relative to the directory
    itself; single files and glob matches keep their base name.
    """
    root_p = Path(root).resolve()
    staged: Dict[str, Path] = {}
    for entry in paths:
        src = (root_p / entry).resolve()
        if src.is_file():
            staged[src.name] = src
        elif src.is_dir():
            for f in sorted(src.rglob("*")):
                if f.is_file():
                    staged[str(f.relative_to(src)).replace("\\", "/")] = f
        else:
            for f in sorted(root_p.glob(entry)):
                if f.is_file():
                    staged[f.name] = f
    return staged


class ArtifactStore:
    """
    Named output blobs of one run:
      root/
        <name>/
          manifest.json
          files/<relative paths>

    Names are flat and scoped to the run; uploading an existing name
    replaces it. Everything under root stays readable after the run.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _dir(self, name: str) -> Path:
        return self.root / _safe_name(name)

    def upload(self, job: str, name: str, paths: Sequence[str], *, root: str | Path = ".") -> Artifact:
        """Copy files matched by `paths` (relative to root) into the artifact."""
        staged = collect_files(paths, root)
        artifact = Artifact(name=name, job=job, files=tuple(sorted(staged)), uploaded_at=time.time())
        target = self._dir(name)
        tmp = self.root / f".{name}.{threading.get_ident()}.tmp"
        shutil.rmtree(tmp, ignore_errors=True)
        (tmp / "files").mkdir(parents=True)
        for rel, src in staged.items():
            dst = tmp / "files" / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
        (tmp / MANIFEST).write_text(json.dumps(artifact.to_dict(), indent=2), encoding="utf-8")

        with self._lock:
            shutil.rmtree(target, ignore_errors=True)
            tmp.replace(target)
        return artifact

    def get(self, name: str) -> Artifact:
        manifest = self._dir(name) / MANIFEST
        if not manifest.exists():
            raise ArtifactNotFound(name)
        data = json.loads(manifest.read_text(encoding="utf-8"))
        return Artifact(
            name=data["name"],
            job=data["job"],
            files=tuple(data["files"]),
            uploaded_at=data["uploaded_at"],
        )

    def download(self, name: str, dest: str | Path) -> List[Path]:
        """Copy the artifact's files into dest; raises ArtifactNotFound."""
        artifact = self.get(name)
        src_root = self._dir(name) / "files"
        dest_p = Path(dest)
        out: List[Path] = []
        for rel in artifact.files:
            dst = dest_p / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src_root / rel, dst)
            out.append(dst)
        return out

    def open_file(self, name: str, rel: str) -> Path:
        """Path of one stored file, for read-only consumers (HTTP service)."""
        artifact = self.get(name)
        if rel not in artifact.files:
            raise ArtifactNotFound(f"{name}/{rel}")
        return self._dir(name) / "files" / rel

    def list(self) -> List[Artifact]:
        out: List[Artifact] = []
        for d in sorted(self.root.iterdir()):
            if d.is_dir() and (d / MANIFEST).exists():
                out.append(self.get(d.name))
        return out
