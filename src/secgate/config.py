# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

SECRET_PREFIX = "SECGATE_SECRET_"


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings, read from the environment.

    SECGATE_HOME                state root (default .secgate)
    SECGATE_CACHE_DIR           cache store root (default <home>/cache)
    SECGATE_RUNS_DIR            run directories (default <home>/runs)
    SECGATE_MAX_WORKERS         runner slots (default cpu_count - 1)
    SECGATE_CACHE_CAPACITY_MB   cache capacity before LRU eviction (default 10240)
    SECGATE_REPO_ROOT           repository checked out into job workspaces
    SECGATE_WORKFLOW            workflow file used by the webhook service
    SECGATE_WEBHOOK_SECRET      HMAC secret for X-Hub-Signature-256 (optional)
    """
    home: Path = Path(".secgate")
    cache_dir: Path = Path(".secgate/cache")
    runs_dir: Path = Path(".secgate/runs")
    max_workers: Optional[int] = None
    cache_capacity_mb: int = 10 * 1024
    repo_root: Path = Path(".")
    workflow: Optional[Path] = None
    webhook_secret: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        home = Path(env.get("SECGATE_HOME", ".secgate"))
        workers = env.get("SECGATE_MAX_WORKERS")
        workflow = env.get("SECGATE_WORKFLOW")
        return cls(
            home=home,
            cache_dir=Path(env.get("SECGATE_CACHE_DIR", str(home / "cache"))),
            runs_dir=Path(env.get("SECGATE_RUNS_DIR", str(home / "runs"))),
            max_workers=int(workers) if workers else None,
            cache_capacity_mb=int(env.get("SECGATE_CACHE_CAPACITY_MB", str(10 * 1024))),
            repo_root=Path(env.get("SECGATE_REPO_ROOT", ".")),
            workflow=Path(workflow) if workflow else None,
            webhook_secret=env.get("SECGATE_WEBHOOK_SECRET") or None,
        )

    @property
    def cache_capacity_bytes(self) -> int:
        return self.cache_capacity_mb * 1024 * 1024

    def resolved_workers(self) -> int:
        if self.max_workers:
            return max(1, self.max_workers)
        c = os.cpu_count() or 2
        return max(1, c - 1)


@dataclass(frozen=True)
class Secrets:
    """
    Secret values available to a run. Never read ambiently by jobs: the
    runner hands each job only the names it declares in `Job.secrets`.
    """
    values: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Secrets":
        env = os.environ if environ is None else environ
        return cls({
            k[len(SECRET_PREFIX):]: v
            for k, v in env.items()
            if k.startswith(SECRET_PREFIX) and len(k) > len(SECRET_PREFIX)
        })

    def select(self, names: Iterable[str]) -> tuple[Dict[str, str], list[str]]:
        """Return (found, missing) for the requested secret names."""
        found: Dict[str, str] = {}
        missing: list[str] = []
        for name in names:
            if name in self.values:
                found[name] = self.values[name]
            else:
                missing.append(name)
        return found, missing

    def __repr__(self) -> str:
        return f"Secrets(names={sorted(self.values)})"
