# step_workflows/cache.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..cache import CacheEntry, CacheResult, cache_key, hash_files
from ..errors import CIError
from ..model import Job, Step
from ..ui.console import get_console

if TYPE_CHECKING:
    from ..runner import JobContext


# ---------------------------------------------------------------------
# Conditions on a restore result
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheCondition:
    """Step predicate: did the restore step `step_id` restore anything?"""
    step_id: str
    hit: bool = True

    def __call__(self, ctx: "JobContext") -> bool:
        result = ctx.cache_result(self.step_id)
        restored = result is not None and result.hit
        return restored if self.hit else not restored


def cache_hit(step_id: str) -> CacheCondition:
    return CacheCondition(step_id, hit=True)


def cache_miss(step_id: str) -> CacheCondition:
    return CacheCondition(step_id, hit=False)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def restore_cache(
    id: str,
    path: str | Sequence[str],
    *,
    namespace: str,
    files: Sequence[str] = (),
    fallback: bool = False,
    restore_keys: Sequence[str] = (),
    include_os: bool = True,
    name: str | None = None,
) -> Step:
    """
    Restore `path` from the cache under key `<namespace>-<OS>-<hash(files)>`.

    fallback=True adds the `<namespace>-<OS>-` prefix to the restore keys, so
    the newest entry of the namespace is used when the exact key misses.
    """
    paths = [path] if isinstance(path, str) else list(path)
    return Step(
        name=name or f"Restore cache {namespace}",
        id=id,
        kind="cache-restore",
        data={
            "namespace": namespace,
            "files": list(files),
            "paths": paths,
            "fallback": fallback,
            "restore_keys": list(restore_keys),
            "include_os": include_os,
        },
    )


def save_cache(restore_id: str, *, name: str | None = None) -> Step:
    """Save the paths of an earlier restore step, unless that restore was an exact hit."""
    return Step(name=name or f"Save cache {restore_id}", kind="cache-save", data={"restore_id": restore_id})


# ---------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------

def resolve_keys(data: dict, ctx: "JobContext") -> tuple[str, List[str]]:
    include_os = data.get("include_os", True)
    digest = hash_files(ctx.workspace, data.get("files") or [])
    key = cache_key(data["namespace"], digest, include_os=include_os)
    restore_keys = list(data.get("restore_keys") or [])
    if data.get("fallback"):
        restore_keys.append(cache_key(data["namespace"], "", include_os=include_os))
    return key, restore_keys


def run_restore(job: Job, step: Step, ctx: "JobContext") -> CacheResult:
    console = get_console()
    key, restore_keys = resolve_keys(step.data, ctx)
    ctx.log(f"cache key: {key} restore-keys: {restore_keys}")

    result = ctx.run.cache.restore(
        key,
        restore_keys,
        dest=ctx.workspace,
        paths=step.data.get("paths") or [],
    )
    if result.hit:
        console.print_cache_hit(job.name, result.matched_key or key, result.exact)
    else:
        console.print_cache_miss(job.name, key)
    ctx.log(f"cache result: hit={result.hit} exact={result.exact} matched={result.matched_key}")
    return result


def run_save(job: Job, step: Step, ctx: "JobContext") -> Optional[CacheEntry]:
    console = get_console()
    restore_id = step.data["restore_id"]
    result = ctx.cache_result(restore_id)
    if result is None:
        raise CIError(
            kind="cache_not_restored",
            job=job.name,
            step=step.name,
            message=f"no result for restore step '{restore_id}'",
        )
    if result.exact:
        ctx.log(f"exact hit on {result.key}, not saving")
        return None

    entry = ctx.run.cache.save(result.key, result.paths, root=ctx.workspace)
    if entry is None:
        console.print_warning(f"[{job.name}] nothing cached for {result.key}: paths missing or over capacity")
        return None
    console.print_cache_saved(job.name, entry.key)
    return entry
