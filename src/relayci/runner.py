# runner.py
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from .cache import ArtifactCache, EvictionPolicy
from .config import DEFAULT_CACHE_DIR, DEFAULT_RUNS_DIR
from .executor import JobExecutor
from .fanout import BuildxBackend, FanOut
from .model import Job, RunResult, Trigger
from .publish import BuildxRegistry, LatestPointer, Publisher
from .runlog import RunStore
from .scheduler import Scheduler
from .ui.console import Console

# local checkout ---> job graph ---> images ---> registry


def build_scheduler(
    *,
    repo_root: str | Path = ".",
    cache_root: str | Path = DEFAULT_CACHE_DIR,
    max_workers: Optional[int] = None,
    protected_branches: Iterable[str] = ("master", "main"),
    eviction: Optional[EvictionPolicy] = None,
    registry_username: Optional[str] = None,
    registry_password: Optional[str] = None,
    console: Optional[Console] = None,
) -> Scheduler:
    """Wire the real collaborators (local cache, docker buildx, registry) together."""
    cache_root_p = Path(cache_root).resolve()
    cache = ArtifactCache(cache_root_p, eviction=eviction)
    fanout = FanOut(BuildxBackend(), cache, layer_cache_root=cache_root_p / "layers")
    publisher = Publisher(
        BuildxRegistry(username=registry_username, password=registry_password),
        protected_branches,
        latest=LatestPointer(cache_root_p / "latest.json"),
    )
    executor = JobExecutor(repo_root=repo_root, cache=cache, fanout=fanout, publisher=publisher)
    return Scheduler(executor, max_workers=max_workers, console=console)


def run_pipeline(
    jobs: List[Job],
    trigger: Trigger,
    *,
    scheduler: Optional[Scheduler] = None,
    runs_root: str | Path = DEFAULT_RUNS_DIR,
    run_id: Optional[str] = None,
    **scheduler_options,
) -> RunResult:
    """
    Run `jobs` once for `trigger` and retain the summary plus every job log,
    whatever the outcome.
    """
    scheduler = scheduler or build_scheduler(**scheduler_options)
    run = scheduler.run(jobs, trigger, run_id=run_id)
    RunStore(runs_root).save(run)
    return run
