# publish.py
from __future__ import annotations

import json
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

from .errors import JobCancelled, PublishError
from .model import ImageSpec, MultiArchArtifact, PublishSpec, Trigger
from .provision import ProcessCancelled, run_process
from .runlog import JobLog


@dataclass
class PublishResult:
    status: str                     # "pushed" | "skipped"
    refs: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def pushed(self) -> bool:
        return self.status == "pushed"


class RegistryBackend:
    def push(self, artifact: MultiArchArtifact, refs: Sequence[str], *, log: JobLog,
             cancel_event: Optional[threading.Event] = None) -> None:
        raise NotImplementedError


class BuildxRegistry(RegistryBackend):
    """
    Push every platform image under <first-ref>-<os>-<arch>, then point each
    requested ref at a manifest list built from them.

    With credentials, logs in once per registry before its first push. The
    registry is the host part of the image name unless `registry` is given.
    """

    def __init__(
        self,
        docker: str = "docker",
        *,
        registry: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.docker = docker
        self.registry = registry
        self.username = username
        self.password = password
        self._logged_in: Set[str] = set()

    def _run(self, cmd: List[str], what: str, log: JobLog, cancel_event) -> None:
        log.write(f"publish: {' '.join(cmd)}")
        try:
            code = run_process(cmd, log=log, cancel_event=cancel_event)
        except ProcessCancelled:
            raise JobCancelled(step=what)
        except OSError as e:
            raise PublishError(f"{what}: {e}")
        if code != 0:
            raise PublishError(f"{what} failed (exit={code})", details={"cmd": " ".join(cmd)})

    def registry_for(self, artifact: MultiArchArtifact) -> str:
        return self.registry or artifact.name.split("/", 1)[0]

    def login(self, registry: str, log: JobLog) -> None:
        if registry in self._logged_in or not (self.username and self.password):
            return
        try:
            proc = subprocess.run(
                [self.docker, "login", registry, "-u", self.username, "--password-stdin"],
                input=self.password,
                text=True,
                capture_output=True,
            )
        except OSError as e:
            raise PublishError(f"login to {registry}: {e}")
        if proc.returncode != 0:
            raise PublishError(f"login to {registry} failed", details={"stderr": proc.stderr.strip()})
        log.write(f"publish: logged in to {registry} as {self.username}")
        self._logged_in.add(registry)

    def push(self, artifact, refs, *, log, cancel_event=None) -> None:
        self.login(self.registry_for(artifact), log)
        sources = []
        for record in artifact.records:
            platform_ref = f"{refs[0]}-{record.platform.slug}"
            self._run([self.docker, "tag", record.image, platform_ref], f"tag {record.platform}", log, cancel_event)
            self._run([self.docker, "push", platform_ref], f"push {record.platform}", log, cancel_event)
            sources.append(platform_ref)

        cmd = [self.docker, "buildx", "imagetools", "create"]
        for ref in refs:
            cmd.extend(["-t", ref])
        cmd.extend(sources)
        self._run(cmd, "create manifest list", log, cancel_event)


class LatestPointer:
    """
    Remembers which Run last moved the floating tag, so an older Run that
    finishes late never repoints it backwards.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._lock = threading.Lock()
        self._memory: dict = {}

    def _load(self) -> dict:
        if self.path is None:
            return dict(self._memory)
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _save(self, data: dict) -> None:
        if self.path is None:
            self._memory = dict(data)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def may_move(self, image: str, run_started_at: float) -> bool:
        """False if a newer Run already moved `latest` for `image`."""
        with self._lock:
            current = self._load().get(image)
            return current is None or current["run_started_at"] <= run_started_at

    def record(self, image: str, run_started_at: float, revision: str) -> None:
        """Note that this Run's push moved `latest`; only after the push succeeded."""
        with self._lock:
            data = self._load()
            current = data.get(image)
            if current is not None and current["run_started_at"] > run_started_at:
                return
            data[image] = {"run_started_at": run_started_at, "revision": revision}
            self._save(data)


class Publisher:
    def __init__(
        self,
        backend: RegistryBackend,
        protected_branches: Iterable[str] = ("master", "main"),
        *,
        latest: Optional[LatestPointer] = None,
    ):
        self.backend = backend
        self.protected_branches = [b[len("refs/heads/"):] if b.startswith("refs/heads/") else b
                                   for b in protected_branches]
        self.latest = latest or LatestPointer()
        self._push_lock = threading.Lock()

    def allowed(self, trigger: Trigger, spec: PublishSpec) -> bool:
        branches = spec.branches or self.protected_branches
        return trigger.branch in branches

    @staticmethod
    def refs_for(image: ImageSpec, trigger: Trigger, spec: PublishSpec) -> List[str]:
        return [f"{image.name}:{trigger.revision}", f"{image.name}:{spec.latest_tag}"]

    def publish(
        self,
        artifact: MultiArchArtifact,
        trigger: Trigger,
        *,
        image: ImageSpec,
        spec: PublishSpec,
        log: JobLog,
        run_started_at: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> PublishResult:
        if not self.allowed(trigger, spec):
            reason = f"branch '{trigger.branch}' is not protected"
            log.write(f"publish: skipped ({reason})")
            return PublishResult(status="skipped", reason=reason)

        revision_ref, latest_ref = self.refs_for(image, trigger, spec)
        with self._push_lock:
            refs = [revision_ref]
            moves_latest = self.latest.may_move(image.name, run_started_at)
            if moves_latest:
                refs.append(latest_ref)
            else:
                log.write(f"publish: {latest_ref} already points at a newer run, leaving it")
            self.backend.push(artifact, refs, log=log, cancel_event=cancel_event)
            if moves_latest:
                self.latest.record(image.name, run_started_at, trigger.revision)

        log.write(f"publish: pushed {', '.join(refs)} ({artifact.digest})")
        return PublishResult(status="pushed", refs=refs)
