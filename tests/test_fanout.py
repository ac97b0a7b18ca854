import pytest

from relayci.cache import ArtifactCache
from relayci.errors import PartialPlatformFailure
from relayci.fanout import FanOut, assemble
from relayci.model import BuildRecord, ImageSpec, Job, PlatformTarget
from relayci.runlog import JobLog

AMD = PlatformTarget("linux", "amd64")
ARM = PlatformTarget("linux", "arm64")


@pytest.fixture
def image_job():
    return Job(
        name="docker-build",
        tool_versions={},
        image=ImageSpec(registry="ghcr.io", repository="flatpak/flat-manager", platforms=[AMD, ARM]),
    )


def test_every_platform_is_built_and_assembled(tmp_path, image_job, fake_build_backend, master):
    backend = fake_build_backend()
    artifact = FanOut(backend).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))

    assert sorted(backend.builds) == ["linux/amd64", "linux/arm64"]
    assert artifact.name == "ghcr.io/flatpak/flat-manager"
    assert artifact.platforms == ["linux/amd64", "linux/arm64"]
    assert backend.emulated == ["linux/amd64", "linux/arm64"]


def test_one_failed_platform_fails_everything(tmp_path, image_job, fake_build_backend, master):
    backend = fake_build_backend(fail={"linux/arm64"})
    with pytest.raises(PartialPlatformFailure) as exc:
        FanOut(backend).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))

    assert list(exc.value.details["failed"]) == ["linux/arm64"]
    assert exc.value.details["succeeded"] == ["linux/amd64"]


def test_assembled_digest_does_not_depend_on_completion_order():
    amd = BuildRecord(job="b", platform=AMD, image="x:amd", digest="sha256:1")
    arm = BuildRecord(job="b", platform=ARM, image="x:arm", digest="sha256:2")
    assert assemble("x", [amd, arm]) == assemble("x", [arm, amd])


def test_platform_builds_are_cached(tmp_path, image_job, fake_build_backend, master):
    cache = ArtifactCache(tmp_path / "cache")
    first = fake_build_backend()
    one = FanOut(first, cache).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))

    second = fake_build_backend()
    two = FanOut(second, cache).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))

    assert second.builds == []
    assert two.digest == one.digest
    assert all(r.cached for r in two.records)


def test_stale_cache_entry_is_rebuilt(tmp_path, image_job, fake_build_backend, master):
    cache = ArtifactCache(tmp_path / "cache")
    one = FanOut(fake_build_backend(), cache).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))
    gone = {r.image for r in one.records if r.platform == ARM}

    backend = fake_build_backend(missing_images=gone)
    FanOut(backend, cache).build(image_job, trigger=master, repo_root=tmp_path, log=JobLog("b"))

    assert backend.builds == ["linux/arm64"]
