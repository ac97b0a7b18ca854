import threading

import pytest

from relayci.errors import JobCancelled, ReadinessTimeoutError
from relayci.harness import CommandProbe, HttpProbe, IntegrationHarness
from relayci.model import IntegrationSpec, ServiceSpec
from relayci.runlog import JobLog


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def _spec(**kwargs):
    kwargs.setdefault("ready_timeout", 10.0)
    kwargs.setdefault("poll_interval", 1.0)
    return IntegrationSpec(
        compose_file="tests/docker-compose.yml",
        primary=ServiceSpec("flat-manager"),
        backing=[ServiceSpec("db")],
        script=["./tests/run-test.py"],
        **kwargs,
    )


def _harness(spec, topology):
    clock = FakeClock()
    return IntegrationHarness(spec, topology, clock=clock, sleep=clock.sleep), clock


def test_script_runs_after_every_service_is_ready(fake_topology):
    topo = fake_topology(ready_after={"db": 3, "flat-manager": 1})
    harness, _clock = _harness(_spec(), topo)
    log = JobLog("e2e")

    report = harness.run(job="e2e", log=log)

    assert report.passed
    assert report.exit_code == 0
    assert report.output == "all tests passed\n"
    assert report.ready_after == {"db": 3.0, "flat-manager": 1.0}
    assert report.service_logs == "service logs"
    assert topo.events == ["up", "exec flat-manager ./tests/run-test.py", "down"]


def test_failing_script_is_reported_verbatim(fake_topology):
    topo = fake_topology(script_exit=1, script_output="FAIL: upload rejected\nTraceback ...")
    harness, _ = _harness(_spec(), topo)

    report = harness.run(job="e2e", log=JobLog("e2e"))

    assert not report.passed
    assert report.exit_code == 1
    assert report.output == "FAIL: upload rejected\nTraceback ...\n"
    assert topo.events[-1] == "down"


def test_readiness_timeout_never_runs_the_script(fake_topology):
    topo = fake_topology(ready_after={"db": 1000})
    harness, clock = _harness(_spec(ready_timeout=5.0), topo)

    with pytest.raises(ReadinessTimeoutError) as exc:
        harness.run(job="e2e", log=JobLog("e2e"))

    assert exc.value.service == "db"
    assert exc.value.job == "e2e"
    assert clock.now == pytest.approx(5.0)
    assert not any(e.startswith("exec") for e in topo.events)
    assert topo.events == ["up", "down"]


def test_script_can_target_another_service(fake_topology):
    topo = fake_topology()
    harness, _ = _harness(_spec(script_service="runner"), topo)
    harness.run(job="e2e", log=JobLog("e2e"))
    assert "exec runner ./tests/run-test.py" in topo.events


def test_cancel_while_waiting(fake_topology):
    topo = fake_topology(ready_after={"db": 1000})
    harness, _ = _harness(_spec(), topo)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(JobCancelled):
        harness.run(job="e2e", log=JobLog("e2e"), cancel_event=cancel)
    assert topo.events == ["up", "down"]


def test_command_probe_reports_last_line(fake_topology):
    topo = fake_topology(script_exit=2, script_output="no response")
    ok, reason = CommandProbe(["pg_isready"]).check(topo, "db")
    assert not ok
    assert reason == "exit=2 no response"


def test_http_probe_unreachable():
    ok, reason = HttpProbe("http://127.0.0.1:9/", timeout=0.5).check(None, "web")
    assert not ok
    assert reason
