from relayci.conditions import ConditionContext, all_of, always, failure, on_branch, on_event, success
from relayci.model import JobStatus, Trigger

S, F, K = JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED


def ctx(ref="refs/heads/master", event="push", **upstream):
    return ConditionContext(trigger=Trigger(revision="abc", ref=ref, event=event), upstream=upstream)


def test_success_needs_every_dependency_succeeded():
    assert success()(ctx(a=S, b=S))
    assert not success()(ctx(a=S, b=K))
    assert not success()(ctx(a=F))


def test_success_with_no_dependencies():
    assert success()(ctx())


def test_failure_and_always():
    assert failure()(ctx(a=S, b=F))
    assert not failure()(ctx(a=S, b=K))
    assert always()(ctx(a=F))


def test_on_branch_accepts_full_refs():
    cond = on_branch("refs/heads/master", "main")
    assert cond(ctx())
    assert cond(ctx(ref="refs/heads/main"))
    assert not cond(ctx(ref="refs/heads/feature"))
    assert not cond(ctx(ref="refs/tags/v1.0"))


def test_on_event():
    assert on_event("push", "schedule")(ctx(event="schedule"))
    assert not on_event("push")(ctx(event="pull_request"))


def test_composition():
    publish = success() & on_branch("master")
    assert publish(ctx(a=S))
    assert not publish(ctx(ref="refs/heads/dev", a=S))
    assert not publish(ctx(a=F))

    either = failure() | on_event("schedule")
    assert either(ctx(event="schedule", a=S))
    assert not (~always())(ctx())
    assert all_of()(ctx(a=F))
    assert all_of(success(), on_event("push"))(ctx(a=S))


def test_description_is_readable():
    assert (success() & on_branch("master")).description == "success() && branch in ['master']"
