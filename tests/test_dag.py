import pytest

from relayci.dag import build_dag, topo_levels, topo_order
from relayci.errors import ConfigurationError
from relayci.model import ImageSpec, Job, PlatformTarget, PublishSpec


def test_levels_group_parallel_jobs(make_job):
    jobs = [
        make_job("check"),
        make_job("fmt"),
        make_job("image", needs=["check", "fmt"]),
        make_job("publish", needs=["image"]),
    ]
    adj, indeg = build_dag(jobs)
    assert topo_levels(adj, indeg) == [["check", "fmt"], ["image"], ["publish"]]


def test_after_edges_order_too(make_job):
    jobs = [make_job("report", after=["test"]), make_job("test")]
    assert topo_order(jobs) == ["test", "report"]


def test_need_and_after_on_same_job_is_one_edge(make_job):
    jobs = [make_job("a"), make_job("b", needs=["a"], after=["a"])]
    _adj, indeg = build_dag(jobs)
    assert indeg["b"] == 1


def test_cycle_is_rejected_with_stuck_jobs(make_job):
    jobs = [make_job("a", needs=["c"]), make_job("b", needs=["a"]), make_job("c", needs=["b"]), make_job("d")]
    with pytest.raises(ConfigurationError) as exc:
        build_dag(jobs)
    assert exc.value.details["stuck"] == ["a", "b", "c"]
    assert exc.value.fatal


def test_missing_dependency(make_job):
    with pytest.raises(ConfigurationError, match="missing job 'lint'"):
        build_dag([make_job("test", needs=["lint"])])


def test_duplicate_names(make_job):
    with pytest.raises(ConfigurationError, match="Duplicate"):
        build_dag([make_job("a"), make_job("a")])


def test_self_dependency(make_job):
    with pytest.raises(ConfigurationError, match="depends on itself"):
        build_dag([make_job("a", after=["a"])])


def test_commands_job_needs_steps():
    with pytest.raises(ConfigurationError, match="no steps"):
        build_dag([Job(name="empty")])


def test_image_job_needs_platforms():
    job = Job(name="img", image=ImageSpec(registry="ghcr.io", repository="x/y"))
    with pytest.raises(ConfigurationError, match="no platforms"):
        build_dag([job])


def test_publish_job_must_need_its_producer():
    img = Job(
        name="img",
        image=ImageSpec(registry="ghcr.io", repository="x/y", platforms=[PlatformTarget("linux", "amd64")]),
    )
    pub = Job(name="pub", after=["img"], publish=PublishSpec(artifact_from="img"))
    with pytest.raises(ConfigurationError, match="must need 'img'"):
        build_dag([img, pub])
