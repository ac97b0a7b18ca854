# harness.py
"""
Integration harness.

Brings a multi-service topology up (a primary service plus backing stores),
waits until each service answers its readiness probe, runs the test script
inside the primary and tears everything down again, whatever happened.

The topology is driven through `docker compose`; probes are either a command
run inside the service or an HTTP GET.
"""
from __future__ import annotations

import subprocess
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CommandError, JobCancelled, ProvisioningError, ReadinessTimeoutError
from .model import IntegrationSpec, ServiceSpec
from .provision import ProcessCancelled, ProcessTimedOut, run_process
from .runlog import JobLog


# ----------------------------------------------------------------------
# Topology
# ----------------------------------------------------------------------

class Topology:
    """A set of named services that can be started, probed and stopped together."""

    def up(self, *, log: JobLog, cancel_event: Optional[threading.Event] = None) -> None:
        raise NotImplementedError

    def down(self, *, log: JobLog) -> None:
        raise NotImplementedError

    def exec(
        self,
        service: str,
        argv: Sequence[str],
        *,
        log: JobLog,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        raise NotImplementedError

    def is_running(self, service: str) -> bool:
        raise NotImplementedError

    def logs(self) -> str:
        return ""


class ComposeTopology(Topology):
    def __init__(self, compose_file: str | Path, project: str, *, docker: str = "docker"):
        self.compose_file = Path(compose_file)
        self.project = project
        self.docker = docker

    def _base(self) -> List[str]:
        return [self.docker, "compose", "-f", str(self.compose_file), "-p", self.project]

    def up(self, *, log, cancel_event=None) -> None:
        cmd = self._base() + ["up", "-d", "--build"]
        log.write(f"harness: {' '.join(cmd)}")
        try:
            code = run_process(cmd, log=log, cancel_event=cancel_event)
        except ProcessCancelled:
            raise JobCancelled(step="topology up")
        except OSError as e:
            raise ProvisioningError(f"could not start topology: {e}", step="topology up")
        if code != 0:
            raise ProvisioningError(
                f"topology '{self.project}' failed to start",
                step="topology up",
                details={"exit_code": code, "compose_file": str(self.compose_file)},
            )

    def down(self, *, log) -> None:
        cmd = self._base() + ["down", "-v", "--remove-orphans"]
        log.write(f"harness: {' '.join(cmd)}")
        try:
            code = run_process(cmd, log=log)
        except OSError as e:
            log.write(f"harness: teardown could not run: {e}")
            return
        if code != 0:
            log.write(f"harness: teardown exited {code}")

    def exec(self, service, argv, *, log, timeout=None, cancel_event=None) -> int:
        cmd = self._base() + ["exec", "-T", service, *argv]
        return run_process(cmd, log=log, timeout=timeout, cancel_event=cancel_event)

    def is_running(self, service: str) -> bool:
        proc = subprocess.run(
            self._base() + ["ps", "--status", "running", "--services"],
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            return False
        return service in proc.stdout.split()

    def logs(self) -> str:
        proc = subprocess.run(
            self._base() + ["logs", "--no-color"],
            capture_output=True,
            text=True,
        )
        return proc.stdout + proc.stderr


# ----------------------------------------------------------------------
# Readiness probes
# ----------------------------------------------------------------------

class Probe:
    def check(self, topology: Topology, service: str) -> Tuple[bool, Optional[str]]:
        """Returns (ready, reason-if-not)."""
        raise NotImplementedError


class RunningProbe(Probe):
    """Ready as soon as the service's container is running."""

    def check(self, topology, service):
        if topology.is_running(service):
            return True, None
        return False, "not running"


class CommandProbe(Probe):
    """Ready when `argv`, executed inside the service, exits 0 (e.g. pg_isready)."""

    def __init__(self, argv: Sequence[str], *, timeout: float = 10.0):
        self.argv = list(argv)
        self.timeout = timeout

    def check(self, topology, service):
        out = JobLog(service)
        try:
            code = topology.exec(service, self.argv, log=out, timeout=self.timeout)
        except ProcessTimedOut:
            return False, f"probe timed out after {self.timeout}s"
        except OSError as e:
            return False, str(e)
        if code == 0:
            return True, None
        tail = out.text().strip().splitlines()[-1:] or [""]
        return False, f"exit={code} {tail[0]}".strip()


class HttpProbe(Probe):
    def __init__(self, url: str, *, expect_status: int = 200, timeout: float = 5.0):
        self.url = url
        self.expect_status = expect_status
        self.timeout = timeout

    def check(self, topology, service):
        try:
            with urllib.request.urlopen(self.url, timeout=self.timeout) as resp:
                status = resp.status
        except urllib.error.HTTPError as e:
            status = e.code
        except (urllib.error.URLError, OSError, ValueError) as e:
            return False, str(e)
        if status == self.expect_status:
            return True, None
        return False, f"HTTP {status}"


def probe_for(service: ServiceSpec) -> Probe:
    if service.ready_command:
        return CommandProbe(service.ready_command)
    if service.ready_url:
        return HttpProbe(service.ready_url)
    return RunningProbe()


# ----------------------------------------------------------------------
# Harness
# ----------------------------------------------------------------------

@dataclass
class IntegrationReport:
    passed: bool
    exit_code: Optional[int]
    output: str
    service_logs: str = ""
    ready_after: Dict[str, float] = field(default_factory=dict)


class IntegrationHarness:
    def __init__(
        self,
        spec: IntegrationSpec,
        topology: Topology,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.spec = spec
        self.topology = topology
        self.clock = clock
        self.sleep = sleep

    def wait_ready(
        self,
        service: ServiceSpec,
        *,
        job: str,
        log: JobLog,
        cancel_event: Optional[threading.Event] = None,
    ) -> float:
        """Poll until `service` is ready. Returns the seconds it took."""
        probe = probe_for(service)
        started = self.clock()
        deadline = started + self.spec.ready_timeout
        last_error: Optional[str] = None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(job=job, step=f"wait for {service.name}")
            ok, last_error = probe.check(self.topology, service.name)
            now = self.clock()
            if ok:
                log.write(f"harness: {service.name} ready after {now - started:.1f}s")
                return now - started
            if now >= deadline:
                raise ReadinessTimeoutError(
                    service.name, self.spec.ready_timeout, job=job, last_error=last_error
                )
            self.sleep(min(self.spec.poll_interval, max(0.0, deadline - now)))

    def run(
        self,
        *,
        job: str,
        log: JobLog,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> IntegrationReport:
        spec = self.spec
        ready_after: Dict[str, float] = {}
        try:
            self.topology.up(log=log, cancel_event=cancel_event)

            # backing stores first, then the primary that depends on them
            for service in [*spec.backing, spec.primary]:
                ready_after[service.name] = self.wait_ready(
                    service, job=job, log=log, cancel_event=cancel_event
                )

            target = spec.script_service or spec.primary.name
            log.write(f"harness: running {' '.join(spec.script)} in {target}")
            script_log = JobLog(job)
            try:
                code = self.topology.exec(
                    target, spec.script, log=script_log, timeout=timeout, cancel_event=cancel_event
                )
            except ProcessCancelled:
                raise JobCancelled(job=job, step="integration script")
            except ProcessTimedOut:
                raise CommandError(
                    job=job, step="integration script", cmd=" ".join(spec.script),
                    exit_code=None, timed_out=True,
                )
            output = script_log.text()
            log.write(output)
            service_logs = self.topology.logs()
            return IntegrationReport(
                passed=code == 0,
                exit_code=code,
                output=output,
                service_logs=service_logs,
                ready_after=ready_after,
            )
        except ReadinessTimeoutError:
            # keep what the services said while we waited
            log.write(self.topology.logs())
            raise
        finally:
            self.topology.down(log=log)
