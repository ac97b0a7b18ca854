# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job breakdown of a Run
      - debugging without full tracebacks

    `fatal` errors abort the whole Run; all others stay local to the job
    that raised them and only propagate to dependents as a skip.
    """
    kind: str
    job: str
    step: Optional[str]
    message: str
    details: dict = field(default_factory=dict)

    fatal: ClassVar[bool] = False

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed or cyclic job graph. Raised before anything executes."""

    fatal = True

    def __init__(self, message: str, *, job: str = "", details: Optional[dict] = None):
        super().__init__(kind="configuration", job=job, step=None, message=message, details=details or {})


class ProvisioningError(CIError):
    """The environment could not be built (missing tool, install failure, runtime down)."""

    def __init__(
        self,
        message: str,
        *,
        job: str = "",
        step: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(kind="provisioning", job=job, step=step, message=message, details=details or {})


class CommandError(CIError):
    """One of the job's own commands exited non-zero (or ran past the job timeout)."""

    def __init__(
        self,
        *,
        job: str,
        step: str,
        cmd: str,
        exit_code: Optional[int],
        timed_out: bool = False,
    ):
        if timed_out:
            message = f"step '{step}' timed out: {cmd}"
        else:
            message = f"step '{step}' failed (exit={exit_code}): {cmd}"
        super().__init__(
            kind="command",
            job=job,
            step=step,
            message=message,
            details={"exit_code": exit_code, "timed_out": timed_out},
        )
        self.cmd = cmd
        self.exit_code = exit_code
        self.timed_out = timed_out


class CacheConsistencyError(CIError):
    """Two different payloads were offered under one fingerprint."""

    fatal = True

    def __init__(self, fingerprint: str, *, existing: str, offered: str, job: str = ""):
        super().__init__(
            kind="cache_consistency",
            job=job,
            step=None,
            message=f"fingerprint {fingerprint[:12]}... already holds different content",
            details={"existing_digest": existing, "offered_digest": offered},
        )
        self.fingerprint = fingerprint


class ReadinessTimeoutError(CIError):
    """A service of the integration topology never became ready in time."""

    def __init__(self, service: str, timeout: float, *, job: str = "", last_error: Optional[str] = None):
        details: Dict[str, object] = {"service": service, "timeout_s": timeout}
        if last_error:
            details["last_error"] = last_error
        super().__init__(
            kind="readiness_timeout",
            job=job,
            step=None,
            message=f"service '{service}' not ready after {timeout:g}s",
            details=details,
        )
        self.service = service


class PartialPlatformFailure(CIError):
    """At least one platform of a multi-arch build failed; nothing is assembled."""

    def __init__(self, *, job: str, failed: Dict[str, str], succeeded: List[str]):
        super().__init__(
            kind="partial_platform_failure",
            job=job,
            step=None,
            message=f"build failed for {', '.join(sorted(failed))}",
            details={"failed": dict(failed), "succeeded": sorted(succeeded)},
        )
        self.failed = dict(failed)


class PublishError(CIError):
    """The registry rejected or could not receive a push."""

    def __init__(self, message: str, *, job: str = "", details: Optional[dict] = None):
        super().__init__(kind="publish", job=job, step=None, message=message, details=details or {})


class JobCancelled(CIError):
    def __init__(self, *, job: str = "", step: Optional[str] = None):
        super().__init__(kind="cancelled", job=job, step=step, message="cancelled")


def as_ci_error(exc: BaseException, job: str) -> CIError:
    """Wrap anything unexpected raised inside a job so it stays on that job."""
    if isinstance(exc, CIError):
        if not exc.job:
            exc.job = job
        return exc
    return CIError(
        kind="internal",
        job=job,
        step=None,
        message=str(exc) or type(exc).__name__,
        details={"error_type": type(exc).__name__},
    )
