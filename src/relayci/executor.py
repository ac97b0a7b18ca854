# executor.py
"""
Runs one job once the scheduler has decided it should run.

The scheduler only knows "job in, outcome out"; everything kind-specific
lives here:

  commands     -> cache consult, provision, steps, output bundle into the cache
  image        -> multi-platform fan-out
  integration  -> compose topology + readiness + script
  publish      -> push the upstream multi-arch artifact (protected branch only)
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .cache import ArtifactCache, compute_fingerprint, pack_paths, unpack_into
from .errors import CIError, CommandError, JobCancelled, as_ci_error
from .fanout import FanOut
from .harness import ComposeTopology, IntegrationHarness, Topology
from .model import Job, JobResult, JobStatus, SkipCause, Trigger
from .provision import environment_name, provision
from .publish import Publisher
from .runlog import JobLog


@dataclass
class ExecutionContext:
    run_id: str
    trigger: Trigger
    log: JobLog
    cancel_event: threading.Event
    # results of this job's declared dependencies only
    upstream: Mapping[str, JobResult] = field(default_factory=dict)
    jobs: Mapping[str, Job] = field(default_factory=dict)
    run_started_at: float = field(default_factory=time.time)


@dataclass
class JobOutcome:
    status: JobStatus
    skip_cause: Optional[SkipCause] = None
    error: Optional[CIError] = None
    cached: bool = False
    artifacts: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


def ci_env(job: Job, ctx: ExecutionContext) -> Dict[str, str]:
    """Variables every job sees, on top of its own env."""
    return {
        "CI": "true",
        "RELAYCI": "true",
        "RELAYCI_RUN_ID": ctx.run_id,
        "RELAYCI_JOB": job.name,
        "RELAYCI_REVISION": ctx.trigger.revision,
        "RELAYCI_REF": ctx.trigger.ref,
        "RELAYCI_BRANCH": ctx.trigger.branch,
        "RELAYCI_EVENT": ctx.trigger.event,
    }


def default_topology(job: Job, ctx: ExecutionContext, repo_root: Path) -> Topology:
    spec = job.integration
    project = spec.project or environment_name(ctx.run_id, job.name)
    return ComposeTopology(repo_root / spec.compose_file, project)


class JobExecutor:
    def __init__(
        self,
        *,
        repo_root: str | Path = ".",
        cache: Optional[ArtifactCache] = None,
        fanout: Optional[FanOut] = None,
        publisher: Optional[Publisher] = None,
        topology_factory: Optional[Callable[[Job, ExecutionContext, Path], Topology]] = None,
        environment_options: Optional[Dict[str, Any]] = None,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.cache = cache
        self.fanout = fanout
        self.publisher = publisher
        self.topology_factory = topology_factory or default_topology
        self.environment_options = dict(environment_options or {})

    def __call__(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        started = time.time()
        try:
            handler = getattr(self, f"_run_{job.kind}")
            outcome = handler(job, ctx)
        except JobCancelled as e:
            e.job = e.job or job.name
            ctx.log.write(f"[{job.name}] cancelled")
            outcome = JobOutcome(status=JobStatus.SKIPPED, skip_cause=SkipCause.CANCELLED, error=e)
        except CIError as e:
            outcome = JobOutcome(status=JobStatus.FAILED, error=as_ci_error(e, job.name))
            ctx.log.write(f"[{job.name}] FAILED {e.kind}: {e.message}")
        except Exception as e:
            err = as_ci_error(e, job.name)
            ctx.log.write(f"[{job.name}] FAILED {err.kind}: {err.message}")
            outcome = JobOutcome(status=JobStatus.FAILED, error=err)
        outcome.started_at = started
        outcome.finished_at = time.time()
        return outcome

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    def _cacheable(self, job: Job) -> bool:
        return self.cache is not None and job.cache_enabled and bool(job.inputs or job.outputs)

    def _run_commands(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        fingerprint = None
        if self._cacheable(job):
            fingerprint, _manifest = compute_fingerprint(job, repo_root=self.repo_root)
            hit = self.cache.lookup(fingerprint)
            if hit is not None and job.cache_skip_on_hit:
                restored = unpack_into(self.cache.read(hit), self.repo_root)
                ctx.log.write(f"[{job.name}] cache: hit ({fingerprint[:12]}...), restored {len(restored)} file(s)")
                return JobOutcome(
                    status=JobStatus.SUCCEEDED,
                    cached=True,
                    artifacts={"bundle": hit},
                    details={"fingerprint": fingerprint},
                )
            ctx.log.write(f"[{job.name}] cache: miss ({fingerprint[:12]}...)")

        with provision(
            job,
            repo_root=self.repo_root,
            run_id=ctx.run_id,
            log=ctx.log,
            cancel_event=ctx.cancel_event,
            extra_env=ci_env(job, ctx),
            **self.environment_options,
        ) as env:
            for step in job.steps:
                env.run(step)

        outcome = JobOutcome(status=JobStatus.SUCCEEDED)
        if job.outputs:
            content, missing = pack_paths(self.repo_root, list(job.outputs))
            if missing:
                raise CIError(
                    kind="artifact",
                    job=job.name,
                    step=None,
                    message=f"declared outputs not produced: {', '.join(missing)}",
                    details={"missing": missing},
                )
            outcome.details["outputs"] = list(job.outputs)
        if fingerprint is not None:
            if not job.outputs:
                content, _ = pack_paths(self.repo_root, [])
            artifact = self.cache.store(
                fingerprint,
                content,
                name=f"{job.name}-outputs",
                producer=job.name,
            )
            ctx.log.write(f"[{job.name}] cache: saved ({fingerprint[:12]}...)")
            outcome.artifacts["bundle"] = artifact
            outcome.details["fingerprint"] = fingerprint
        return outcome

    # ------------------------------------------------------------------
    # image
    # ------------------------------------------------------------------

    def _run_image(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        if self.fanout is None:
            raise CIError(kind="configuration", job=job.name, step=None,
                          message="image job but no build backend configured")
        artifact = self.fanout.build(
            job,
            trigger=ctx.trigger,
            repo_root=self.repo_root,
            log=ctx.log,
            cancel_event=ctx.cancel_event,
        )
        ctx.log.write(f"[{job.name}] assembled {artifact.name} {artifact.digest} for {', '.join(artifact.platforms)}")
        return JobOutcome(
            status=JobStatus.SUCCEEDED,
            cached=all(r.cached for r in artifact.records),
            artifacts={"image": artifact},
            details={"platforms": artifact.platforms, "digest": artifact.digest},
        )

    # ------------------------------------------------------------------
    # integration
    # ------------------------------------------------------------------

    def _run_integration(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        spec = job.integration
        topology = self.topology_factory(job, ctx, self.repo_root)
        harness = IntegrationHarness(spec, topology)
        report = harness.run(job=job.name, log=ctx.log, cancel_event=ctx.cancel_event, timeout=job.timeout)
        details = {
            "passed": report.passed,
            "exit_code": report.exit_code,
            "ready_after": report.ready_after,
            "report": report.output,
        }
        if not report.passed:
            err = CommandError(
                job=job.name,
                step="integration script",
                cmd=" ".join(spec.script),
                exit_code=report.exit_code,
            )
            ctx.log.write(f"[{job.name}] FAILED {err.kind}: {err.message}")
            return JobOutcome(status=JobStatus.FAILED, error=err, details=details)
        return JobOutcome(status=JobStatus.SUCCEEDED, details=details)

    # ------------------------------------------------------------------
    # publish
    # ------------------------------------------------------------------

    def _run_publish(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        spec = job.publish
        if self.publisher is None:
            raise CIError(kind="configuration", job=job.name, step=None,
                          message="publish job but no registry configured")
        producer = ctx.upstream.get(spec.artifact_from)
        artifact = producer.artifacts.get("image") if producer is not None else None
        image_job = ctx.jobs.get(spec.artifact_from)
        if artifact is None or image_job is None or image_job.image is None:
            raise CIError(
                kind="artifact",
                job=job.name,
                step=None,
                message=f"no multi-arch image from '{spec.artifact_from}' to publish",
            )

        result = self.publisher.publish(
            artifact,
            ctx.trigger,
            image=image_job.image,
            spec=spec,
            log=ctx.log,
            run_started_at=ctx.run_started_at,
            cancel_event=ctx.cancel_event,
        )
        if not result.pushed:
            return JobOutcome(
                status=JobStatus.SKIPPED,
                skip_cause=SkipCause.PREDICATE,
                details={"reason": result.reason},
            )
        return JobOutcome(
            status=JobStatus.SUCCEEDED,
            artifacts={"refs": list(result.refs)},
            details={"refs": list(result.refs), "digest": artifact.digest},
        )
