# fanout.py
"""
Multi-platform image builds.

One build per PlatformTarget (scatter), joined at a single merge point
(gather). Either every platform produced a BuildRecord and they are
assembled into one MultiArchArtifact, or the whole fan-out fails with
PartialPlatformFailure and nothing is assembled.
"""
from __future__ import annotations

import hashlib
import json
import platform as host_platform
import subprocess
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .cache import ArtifactCache, compute_fingerprint
from .errors import (
    CIError,
    CommandError,
    JobCancelled,
    PartialPlatformFailure,
    ProvisioningError,
    as_ci_error,
)
from .model import BuildRecord, ImageSpec, Job, MultiArchArtifact, PlatformTarget, Trigger
from .provision import ProcessCancelled, ProcessTimedOut, run_process
from .runlog import JobLog

_MACHINE_TO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


def native_arch() -> str:
    machine = host_platform.machine().lower()
    return _MACHINE_TO_ARCH.get(machine, machine)


@dataclass
class BuildRequest:
    job: str
    image: ImageSpec
    platform: PlatformTarget
    tag: str
    repo_root: Path
    labels: Dict[str, str] = field(default_factory=dict)
    layer_cache: Optional[Path] = None
    log: Optional[JobLog] = None
    cancel_event: Optional[threading.Event] = None


class BuildBackend:
    """What the fan-out needs from a container builder."""

    def ensure_emulation(self, platforms: List[PlatformTarget], *, log: JobLog,
                         cancel_event: Optional[threading.Event] = None) -> None:
        pass

    def build(self, request: BuildRequest) -> BuildRecord:
        raise NotImplementedError

    def has_image(self, record: BuildRecord) -> bool:
        return True


class BuildxBackend(BuildBackend):
    """
    docker buildx, one platform per invocation. Non-native platforms are
    built under QEMU, registered once through tonistiigi/binfmt.
    """

    BINFMT_IMAGE = "tonistiigi/binfmt"

    def __init__(self, docker: str = "docker", native: Optional[str] = None):
        self.docker = docker
        self.native = native or native_arch()
        self._emulated: set[str] = set()
        self._lock = threading.Lock()

    def ensure_emulation(self, platforms, *, log, cancel_event=None) -> None:
        with self._lock:
            foreign = sorted({p.arch for p in platforms if p.arch != self.native} - self._emulated)
            if not foreign:
                return
            cmd = [self.docker, "run", "--privileged", "--rm", self.BINFMT_IMAGE, "--install", ",".join(foreign)]
            log.write(f"emulation: {' '.join(cmd)}")
            try:
                code = run_process(cmd, log=log, cancel_event=cancel_event)
            except ProcessCancelled:
                raise JobCancelled(step="set up QEMU")
            except OSError as e:
                raise ProvisioningError(f"could not set up QEMU: {e}", step="set up QEMU")
            if code != 0:
                raise ProvisioningError(
                    f"could not register QEMU emulators for {', '.join(foreign)}",
                    step="set up QEMU",
                    details={"exit_code": code},
                )
            self._emulated.update(foreign)

    def build(self, request: BuildRequest) -> BuildRecord:
        spec = request.image
        step = f"build {request.platform}"
        with tempfile.TemporaryDirectory(prefix="relayci-iid-") as tmp:
            iidfile = Path(tmp) / "iid"
            cmd = [
                self.docker, "buildx", "build",
                "--platform", str(request.platform),
                "-f", str(request.repo_root / spec.context / spec.file),
                "-t", request.tag,
                "--iidfile", str(iidfile),
                "--load",
            ]
            if spec.target:
                cmd.extend(["--target", spec.target])
            for key, value in sorted(spec.build_args.items()):
                cmd.extend(["--build-arg", f"{key}={value}"])
            for key, value in sorted(request.labels.items()):
                cmd.extend(["--label", f"{key}={value}"])
            if request.layer_cache is not None:
                cmd.extend([
                    "--cache-from", f"type=local,src={request.layer_cache}",
                    "--cache-to", f"type=local,dest={request.layer_cache},mode=max",
                ])
            cmd.append(str(request.repo_root / spec.context))

            try:
                code = run_process(cmd, log=request.log, cancel_event=request.cancel_event)
            except ProcessCancelled:
                raise JobCancelled(job=request.job, step=step)
            except ProcessTimedOut:
                raise CommandError(job=request.job, step=step, cmd=" ".join(cmd), exit_code=None, timed_out=True)
            if code != 0:
                raise CommandError(job=request.job, step=step, cmd=" ".join(cmd), exit_code=code)
            digest = iidfile.read_text(encoding="utf-8").strip()

        return BuildRecord(job=request.job, platform=request.platform, image=request.tag, digest=digest)

    def has_image(self, record: BuildRecord) -> bool:
        proc = subprocess.run(
            [self.docker, "image", "inspect", record.image],
            capture_output=True,
            text=True,
        )
        return proc.returncode == 0


def default_labels(trigger: Trigger) -> Dict[str, str]:
    return {"org.opencontainers.image.revision": trigger.revision}


def assemble(name: str, records: List[BuildRecord]) -> MultiArchArtifact:
    ordered = tuple(sorted(records, key=lambda r: str(r.platform)))
    index = [[str(r.platform), r.digest] for r in ordered]
    digest = "sha256:" + hashlib.sha256(json.dumps(index, separators=(",", ":")).encode("utf-8")).hexdigest()
    return MultiArchArtifact(name=name, records=ordered, digest=digest)


def _record_to_bytes(record: BuildRecord) -> bytes:
    data = {
        "job": record.job,
        "platform": str(record.platform),
        "image": record.image,
        "digest": record.digest,
    }
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _record_from_bytes(content: bytes) -> BuildRecord:
    data = json.loads(content.decode("utf-8"))
    return BuildRecord(
        job=data["job"],
        platform=PlatformTarget.parse(data["platform"]),
        image=data["image"],
        digest=data["digest"],
        cached=True,
    )


class FanOut:
    def __init__(
        self,
        backend: BuildBackend,
        cache: Optional[ArtifactCache] = None,
        *,
        layer_cache_root: Optional[Path] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.layer_cache_root = layer_cache_root

    def build(
        self,
        job: Job,
        *,
        trigger: Trigger,
        repo_root: Path,
        log: JobLog,
        cancel_event: Optional[threading.Event] = None,
    ) -> MultiArchArtifact:
        spec = job.image
        if spec is None:
            raise CIError(kind="configuration", job=job.name, step=None, message="not an image job")

        platforms = list(spec.platforms)
        self.backend.ensure_emulation(platforms, log=log, cancel_event=cancel_event)

        labels = default_labels(trigger)
        labels.update(spec.labels)

        records: Dict[PlatformTarget, BuildRecord] = {}
        failed: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=len(platforms), thread_name_prefix=f"fanout-{job.name}") as pool:
            futures = {
                pool.submit(self._build_one, job, p, labels, repo_root, log, cancel_event): p
                for p in platforms
            }
            for fut in as_completed(futures):
                p = futures[fut]
                try:
                    records[p] = fut.result()
                    log.write(f"[{job.name}] {p}: {records[p].digest}")
                except JobCancelled:
                    raise
                except CIError as e:
                    if e.fatal:
                        raise
                    failed[str(p)] = e.message
                    log.write(f"[{job.name}] {p}: FAILED {e.message}")
                except Exception as e:
                    failed[str(p)] = as_ci_error(e, job.name).message
                    log.write(f"[{job.name}] {p}: FAILED {e}")

        if failed:
            raise PartialPlatformFailure(
                job=job.name,
                failed=failed,
                succeeded=[str(p) for p in records],
            )
        return assemble(spec.name, [records[p] for p in platforms])

    def _build_one(
        self,
        job: Job,
        target: PlatformTarget,
        labels: Dict[str, str],
        repo_root: Path,
        log: JobLog,
        cancel_event: Optional[threading.Event],
    ) -> BuildRecord:
        spec = job.image
        fingerprint = None
        if self.cache is not None and job.cache_enabled:
            fingerprint, _ = compute_fingerprint(
                job,
                repo_root=repo_root,
                extra={"platform": str(target), "labels": json.dumps(labels, sort_keys=True)},
            )
            hit = self.cache.lookup(fingerprint)
            if hit is not None:
                record = _record_from_bytes(self.cache.read(hit))
                if self.backend.has_image(record):
                    log.write(f"[{job.name}] {target}: cache hit {fingerprint[:12]}...")
                    return record
                # the image is gone from the builder; the record is stale
                self.cache.evict(fingerprint)

        tag = f"{spec.name}:{(fingerprint or job.name)[:12]}-{target.slug}"
        layer_cache = None
        if self.layer_cache_root is not None:
            layer_cache = self.layer_cache_root / spec.name.replace("/", "_") / target.slug
            layer_cache.mkdir(parents=True, exist_ok=True)

        record = self.backend.build(BuildRequest(
            job=job.name,
            image=spec,
            platform=target,
            tag=tag,
            repo_root=repo_root,
            labels=labels,
            layer_cache=layer_cache,
            log=log,
            cancel_event=cancel_event,
        ))

        if fingerprint is not None:
            self.cache.store(
                fingerprint,
                _record_to_bytes(record),
                name=f"{spec.name}@{target}",
                producer=job.name,
                kind="image-build",
            )
        return record
