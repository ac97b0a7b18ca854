# provision.py
from __future__ import annotations

import os
import posixpath
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

from .errors import CommandError, JobCancelled, ProvisioningError
from .model import Job, Step
from .runlog import JobLog

TOOL_HINTS = {
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

POLL_INTERVAL = 0.1
KILL_GRACE_S = 5.0


class ProcessCancelled(Exception):
    pass


class ProcessTimedOut(Exception):
    pass


# ----------------------------------------------------------------------
# Process primitive
# ----------------------------------------------------------------------

def _pump(stream, log: Optional[JobLog]) -> None:
    for line in iter(stream.readline, ""):
        if log is not None:
            log.write(line)
    stream.close()


def _kill(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


def run_process(
    cmd: Union[str, Sequence[str]],
    *,
    cwd: str | Path | None = None,
    env: Optional[Dict[str, str]] = None,
    log: Optional[JobLog] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    """
    Run a command, capturing combined stdout/stderr line by line into `log`.

    A string runs through the shell; a sequence runs directly. The process
    gets its own session so a timeout or cancellation kills the whole tree.

    Raises ProcessTimedOut / ProcessCancelled; returns the exit code otherwise.
    """
    proc = subprocess.Popen(
        cmd,
        shell=isinstance(cmd, str),
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    reader = threading.Thread(target=_pump, args=(proc.stdout, log), daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout if timeout is not None else None
    try:
        while True:
            try:
                return proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                _kill(proc)
                raise ProcessCancelled()
            if deadline is not None and time.monotonic() >= deadline:
                _kill(proc)
                raise ProcessTimedOut()
    finally:
        reader.join(timeout=KILL_GRACE_S)


# ----------------------------------------------------------------------
# Environments
# ----------------------------------------------------------------------

class Environment:
    """
    An isolated place to run one job's commands.

    Lifecycle: setup() -> run(step)* -> teardown(). Use provision() rather
    than calling these directly: it guarantees teardown on every exit path.
    """

    def __init__(
        self,
        job: Job,
        *,
        repo_root: Path,
        run_id: str,
        log: JobLog,
        cancel_event: Optional[threading.Event] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ):
        self.job = job
        self.repo_root = Path(repo_root).resolve()
        self.run_id = run_id
        self.log = log
        self.cancel_event = cancel_event
        self.extra_env = dict(extra_env or {})
        self._deadline: Optional[float] = None

    def describe(self) -> str:
        return self.job.environment.kind

    def _remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def _exec(self, cmd: Union[str, Sequence[str]], *, cwd: Optional[Path] = None,
              env: Optional[Dict[str, str]] = None) -> int:
        return run_process(
            cmd,
            cwd=cwd,
            env=env,
            log=self.log,
            timeout=self._remaining(),
            cancel_event=self.cancel_event,
        )

    def _provision_step(self, what: str, cmd: Union[str, Sequence[str]], **kw) -> int:
        try:
            return self._exec(cmd, **kw)
        except ProcessCancelled:
            raise JobCancelled(job=self.job.name, step=what)
        except ProcessTimedOut:
            raise ProvisioningError(f"{what} timed out", job=self.job.name, step=what)
        except OSError as e:
            raise ProvisioningError(f"{what} could not start: {e}", job=self.job.name, step=what)

    def setup(self) -> None:
        if self.job.timeout is not None:
            self._deadline = time.monotonic() + self.job.timeout
        self._start()
        self._check_tools()
        self._install_packages()

    def run(self, step: Step) -> None:
        self.log.write(f"[{self.job.name}] > {step.name}")
        try:
            code = self._run_step(step)
        except ProcessCancelled:
            raise JobCancelled(job=self.job.name, step=step.name)
        except ProcessTimedOut:
            raise CommandError(job=self.job.name, step=step.name, cmd=step.run, exit_code=None, timed_out=True)
        except OSError as e:
            raise ProvisioningError(f"could not start step: {e}", job=self.job.name, step=step.name)
        if code != 0:
            raise CommandError(job=self.job.name, step=step.name, cmd=step.run, exit_code=code)

    def install_command(self) -> Optional[str]:
        if not self.job.packages:
            return None
        packages = " ".join(shlex.quote(p) for p in self.job.packages)
        return self.job.environment.install.format(packages=packages)

    # hooks
    def _start(self) -> None:
        pass

    def _check_tools(self) -> None:
        raise NotImplementedError

    def _install_packages(self) -> None:
        raise NotImplementedError

    def _run_step(self, step: Step) -> int:
        raise NotImplementedError

    def teardown(self) -> None:
        pass


class LocalEnvironment(Environment):
    """
    Process sandbox on the host: clean environment merge, a private TMPDIR
    removed on teardown, commands run from the repository checkout.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sandbox: Optional[Path] = None

    def describe(self) -> str:
        return "local process sandbox"

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.extra_env)
        env.update(self.job.env)
        if self.sandbox is not None:
            env["TMPDIR"] = str(self.sandbox)
        return env

    def _start(self) -> None:
        self.sandbox = Path(tempfile.mkdtemp(prefix=f"relayci-{slugify(self.job.name)}-"))

    def _check_tools(self) -> None:
        path = self._env().get("PATH")
        missing = [t for t in self.job.requires if shutil.which(t, path=path) is None]
        if missing:
            raise ProvisioningError(
                f"required tool(s) not available: {', '.join(missing)}",
                job=self.job.name,
                details={"missing": missing, "hint": " ".join(TOOL_HINTS.get(t, f"Install {t} or fix PATH.") for t in missing)},
            )

    def _install_packages(self) -> None:
        cmd = self.install_command()
        if cmd is None:
            return
        self.log.write(f"[{self.job.name}] install: {cmd}")
        code = self._provision_step("install dependencies", cmd, cwd=self.repo_root, env=self._env())
        if code != 0:
            raise ProvisioningError(
                f"dependency install failed (exit={code})",
                job=self.job.name,
                step="install dependencies",
                details={"cmd": cmd, "exit_code": code},
            )

    def _run_step(self, step: Step) -> int:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise ProvisioningError(f"step cwd not found: {cwd}", job=self.job.name, step=step.name)
        return self._exec(step.run, cwd=cwd, env=self._env())

    def teardown(self) -> None:
        if self.sandbox is not None:
            shutil.rmtree(self.sandbox, ignore_errors=True)
            self.sandbox = None


class ContainerEnvironment(Environment):
    """
    A long-lived container for the whole job: the checkout is mounted at
    /workspace, installs and steps go through `docker exec`, and the
    container is force-removed on teardown.
    """

    WORKDIR = "/workspace"

    def __init__(self, *args, docker: str = "docker", **kwargs):
        super().__init__(*args, **kwargs)
        self.docker = docker
        self.container = environment_name(self.run_id, self.job.name)
        self.started = False

    def describe(self) -> str:
        return f"container {self.job.environment.image} ({self.container})"

    def _check_docker_available(self) -> None:
        try:
            subprocess.run([self.docker, "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise ProvisioningError(
                "Docker is not available",
                job=self.job.name,
                details={"hint": TOOL_HINTS["docker"]},
            )

    def _start(self) -> None:
        spec = self.job.environment
        if not spec.image:
            raise ProvisioningError("container environment needs an image", job=self.job.name)
        self._check_docker_available()

        cmd: List[str] = [
            self.docker, "run", "-d", "--rm",
            "--name", self.container,
            "-v", f"{self.repo_root}:{self.WORKDIR}",
            "-w", self.WORKDIR,
        ]
        for vol in spec.volumes:
            cmd.extend(["-v", vol])
        env = dict(self.extra_env)
        env.update(self.job.env)
        for key, value in sorted(env.items()):
            cmd.extend(["-e", f"{key}={value}"])
        if spec.user:
            cmd.extend(["--user", spec.user])
        cmd.extend([spec.image, "sleep", "infinity"])

        # a cancelled or timed out `docker run` may still leave a container behind
        self.started = True
        code = self._provision_step("start container", cmd)
        if code != 0:
            raise ProvisioningError(
                f"could not start container from {spec.image} (exit={code})",
                job=self.job.name,
                step="start container",
            )

    def _exec_in(self, script: str, *, workdir: Optional[str] = None) -> List[str]:
        cmd = [self.docker, "exec"]
        if workdir:
            cmd.extend(["-w", workdir])
        cmd.extend([self.container, "sh", "-c", script])
        return cmd

    def _check_tools(self) -> None:
        missing = []
        for tool in self.job.requires:
            code = self._provision_step("check tools", self._exec_in(f"command -v {shlex.quote(tool)}"))
            if code != 0:
                missing.append(tool)
        if missing:
            raise ProvisioningError(
                f"required tool(s) not available in {self.job.environment.image}: {', '.join(missing)}",
                job=self.job.name,
                details={"missing": missing},
            )

    def _install_packages(self) -> None:
        cmd = self.install_command()
        if cmd is None:
            return
        self.log.write(f"[{self.job.name}] install: {cmd}")
        code = self._provision_step("install dependencies", self._exec_in(cmd))
        if code != 0:
            raise ProvisioningError(
                f"dependency install failed (exit={code})",
                job=self.job.name,
                step="install dependencies",
                details={"cmd": cmd, "exit_code": code},
            )

    def _run_step(self, step: Step) -> int:
        container_cwd = posixpath.normpath(posixpath.join(self.WORKDIR, step.cwd or "."))
        return self._exec(self._exec_in(step.run, workdir=container_cwd))

    def teardown(self) -> None:
        if not self.started:
            return
        proc = subprocess.run(
            [self.docker, "rm", "-f", self.container],
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            self.log.write(f"[{self.job.name}] teardown: docker rm -f failed: {proc.stderr.strip()}")
        self.started = False


def slugify(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "-", value).strip("-").lower() or "job"


def environment_name(run_id: str, job: str) -> str:
    """
    Name for a job's container or compose project. The whole run id goes in:
    its date-time prefix is shared by every Run started in the same second.
    """
    return f"relayci-{slugify(run_id)}-{slugify(job)}"


def make_environment(job: Job, *, docker: str = "docker", **kwargs) -> Environment:
    kind = job.environment.kind
    if kind == "local":
        return LocalEnvironment(job, **kwargs)
    if kind == "container":
        return ContainerEnvironment(job, docker=docker, **kwargs)
    raise ProvisioningError(f"unknown environment kind {kind!r}", job=job.name)


@contextmanager
def provision(job: Job, **kwargs) -> Iterator[Environment]:
    """
    Acquire an environment for `job` and always release it:

        with provision(job, repo_root=..., run_id=..., log=...) as env:
            for step in job.steps:
                env.run(step)
    """
    env = make_environment(job, **kwargs)
    env.log.write(f"[{job.name}] provision: {env.describe()}")
    try:
        env.setup()
        yield env
    finally:
        env.teardown()
        env.log.write(f"[{job.name}] teardown: done")
