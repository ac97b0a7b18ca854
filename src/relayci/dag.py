# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ConfigurationError
from .model import Job


def validate_jobs(jobs: List[Job]) -> None:
    """Per-job checks that do not need the graph."""
    for job in jobs:
        if not job.name:
            raise ConfigurationError("Job with an empty name")
        if job.kind == "commands" and not job.steps:
            raise ConfigurationError(f"Job '{job.name}' has no steps", job=job.name)
        if job.name in job.dependencies:
            raise ConfigurationError(f"Job '{job.name}' depends on itself", job=job.name)
        if job.image is not None and not job.image.platforms:
            raise ConfigurationError(f"Image job '{job.name}' declares no platforms", job=job.name)
        if job.publish is not None and job.publish.artifact_from not in job.needs:
            raise ConfigurationError(
                f"Publish job '{job.name}' must need '{job.publish.artifact_from}' "
                f"to receive its artifact",
                job=job.name,
            )


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs / job.after: names of jobs that must reach a terminal
        status BEFORE this job

    Returns (adj, indeg) with edges dependency -> dependent.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    validate_jobs(jobs)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.dependencies:
            if dep not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    # raises on cycles
    topo_levels(adj, indeg)
    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Every job in a stage can run in parallel with the others.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(
            f"Job graph has a cycle. Stuck jobs: {remaining}",
            details={"stuck": remaining},
        )

    return levels


def topo_order(jobs: List[Job]) -> List[str]:
    """A single valid execution order (stage by stage, names sorted within a stage)."""
    adj, indeg = build_dag(jobs)
    return [name for level in topo_levels(adj, indeg) for name in level]
