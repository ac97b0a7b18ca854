# scheduler.py
"""
Dependency scheduler.

One decision loop (the calling thread) owns every JobResult. Jobs run on a
bounded thread pool; a job is looked at only when all of its dependencies
are terminal, and then either

  - skipped(cancelled)        the Run was cancelled or hit a fatal error
  - skipped(upstream_failed)  a required dependency failed (or was skipped
                              because one of its own did)
  - skipped(predicate)        its `when` condition is false
  - dispatched                everything else

A failing job never stops its siblings; only fatal errors stop the Run.
"""
from __future__ import annotations

import heapq
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple

from .conditions import ConditionContext
from .dag import build_dag, topo_levels
from .errors import CIError, JobCancelled, as_ci_error
from .executor import ExecutionContext, JobOutcome
from .model import Job, JobResult, JobStatus, RunResult, SkipCause, Trigger
from .runlog import JobLog
from .ui.console import Console, get_console

Executor = Callable[[Job, ExecutionContext], JobOutcome]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def new_run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


class Scheduler:
    def __init__(
        self,
        executor: Executor,
        *,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.max_workers = max_workers or default_workers()
        self.console = console
        self._cancel = threading.Event()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def cancel(self) -> None:
        """Stop the Run: nothing new starts, running jobs are told to stop."""
        self._cancel.set()

    # ------------------------------------------------------------------

    def _gate(self, job: Job, run: RunResult) -> Optional[Tuple[JobStatus, Optional[SkipCause], Optional[CIError]]]:
        """Decide whether `job` runs. None means dispatch it."""
        if self._cancel.is_set():
            return JobStatus.SKIPPED, SkipCause.CANCELLED, None

        for dep in job.needs:
            r = run.results[dep]
            if r.status == JobStatus.FAILED:
                return JobStatus.SKIPPED, SkipCause.UPSTREAM_FAILED, None
            if r.status == JobStatus.SKIPPED and r.skip_cause == SkipCause.UPSTREAM_FAILED:
                return JobStatus.SKIPPED, SkipCause.UPSTREAM_FAILED, None
            if r.status == JobStatus.SKIPPED and r.skip_cause == SkipCause.CANCELLED:
                return JobStatus.SKIPPED, SkipCause.CANCELLED, None

        ctx = ConditionContext(
            trigger=run.trigger,
            upstream={d: run.results[d].status for d in job.dependencies},
        )
        try:
            should_run = job.condition(ctx)
        except Exception as e:
            err = CIError(
                kind="predicate",
                job=job.name,
                step=None,
                message=f"condition {job.condition!r} raised: {e}",
                details={"error_type": type(e).__name__},
            )
            return JobStatus.FAILED, None, err
        if not should_run:
            return JobStatus.SKIPPED, SkipCause.PREDICATE, None
        return None

    def _execute(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        started = time.time()
        try:
            outcome = self.executor(job, ctx)
        except JobCancelled as e:
            outcome = JobOutcome(status=JobStatus.SKIPPED, skip_cause=SkipCause.CANCELLED, error=e)
        except Exception as e:
            outcome = JobOutcome(status=JobStatus.FAILED, error=as_ci_error(e, job.name))
        if outcome.started_at is None:
            outcome.started_at = started
        if outcome.finished_at is None:
            outcome.finished_at = time.time()
        return outcome

    def _report(self, result: JobResult) -> None:
        console = self.console or get_console()
        if result.status == JobStatus.SKIPPED:
            reason = result.details.get("reason")
            console.print_job_skipped(result.name, result.skip_cause.value if result.skip_cause else "", reason)
        elif result.status == JobStatus.FAILED and result.error is not None:
            hint = result.error.details.get("hint")
            exit_code = getattr(result.error, "exit_code", None)
            console.print_failure(result.name, str(result.error), exit_code=exit_code, hint=hint)
        else:
            console.print_job_finished(result.name, result.label, result.duration)

    # ------------------------------------------------------------------

    def run(self, jobs: List[Job], trigger: Trigger, *, run_id: Optional[str] = None) -> RunResult:
        """
        Execute the job graph once for `trigger`.

        Raises ConfigurationError (before anything runs) on a malformed or
        cyclic graph. Every other problem ends up on the returned RunResult.
        """
        adj, indeg = build_dag(jobs)
        order = [n for level in topo_levels(adj, indeg) for n in level]
        rank = {n: i for i, n in enumerate(order)}
        by_name: Dict[str, Job] = {j.name: j for j in jobs}
        console = self.console or get_console()

        run = RunResult(
            run_id=run_id or new_run_id(),
            trigger=trigger,
            results={n: JobResult(name=n) for n in order},
            allow_failure={j.name: j.allow_failure for j in jobs},
        )
        logs: Dict[str, JobLog] = {}
        remaining = dict(indeg)
        ready: List[Tuple[int, str]] = [(rank[n], n) for n in order if remaining[n] == 0]
        heapq.heapify(ready)
        in_flight: Dict[Future, str] = {}

        def finish(name: str, outcome: JobOutcome) -> None:
            r = run.results[name]
            r.status = outcome.status
            r.skip_cause = outcome.skip_cause
            r.error = outcome.error
            r.cached = outcome.cached
            r.artifacts = dict(outcome.artifacts)
            r.details = dict(outcome.details)
            r.started_at = outcome.started_at if outcome.started_at is not None else r.started_at
            r.finished_at = outcome.finished_at or time.time()
            if name in logs:
                r.log = logs[name].text()
            self._report(r)

            if r.error is not None and r.error.fatal and run.fatal is None:
                run.fatal = r.error
                console.print_error("Run aborted", r.error.message, details=[f"job={name}"])
                self._cancel.set()

            for child in sorted(adj[name], key=rank.get):
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (rank[child], child))

        def dispatch() -> None:
            while ready and len(in_flight) < self.max_workers:
                _, name = heapq.heappop(ready)
                job = by_name[name]
                decision = self._gate(job, run)
                if decision is not None:
                    status, cause, err = decision
                    finish(name, JobOutcome(status=status, skip_cause=cause, error=err))
                    continue

                result = run.results[name]
                result.status = JobStatus.RUNNING
                result.started_at = time.time()
                console.print_job_start(name)
                logs[name] = JobLog(name)
                ctx = ExecutionContext(
                    run_id=run.run_id,
                    trigger=trigger,
                    log=logs[name],
                    cancel_event=self._cancel,
                    upstream={d: run.results[d] for d in job.dependencies},
                    jobs=by_name,
                    run_started_at=run.started_at,
                )
                in_flight[pool.submit(self._execute, job, ctx)] = name

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relayci-job") as pool:
            while ready or in_flight:
                try:
                    dispatch()
                    if not in_flight:
                        continue
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        name = in_flight.pop(fut)
                        finish(name, fut.result())
                except KeyboardInterrupt:
                    # running jobs see the event, kill their processes and tear down
                    console.print_info("\nInterrupted, cancelling run...")
                    run.cancelled = True
                    self._cancel.set()

        # an interrupt can land between dispatch and finish; those jobs never ran to the end
        for name, r in run.results.items():
            if r.status.terminal:
                continue
            r.status = JobStatus.SKIPPED
            r.skip_cause = SkipCause.CANCELLED
            r.finished_at = time.time()
            if name in logs:
                r.log = logs[name].text()

        if self._cancel.is_set() and run.fatal is None:
            run.cancelled = True
        run.finished_at = time.time()
        return run
