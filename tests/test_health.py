import threading
import time
from types import SimpleNamespace

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from conftest import START, FakeController
from homestack.checks import (
    AccessibilityCheck,
    Check,
    CheckRegistry,
    ConfigPresenceCheck,
    DiskUsageCheck,
    DockerDaemonCheck,
    LivenessCheck,
    NetworkReachabilityCheck,
    ResourceCheck,
    VpnTunnelCheck,
    build_default_registry,
    grade,
)
from homestack.config import NetworkPair, TrackedService
from homestack.errors import HealthRunCancelled
from homestack.health import HealthAggregator, run_check
from homestack.models import CheckResult, HealthReport, Thresholds
from homestack.services import ExecResult

DISK = Thresholds(warn=80, critical=90)


class StaticCheck(Check):
    category = "test"

    def __init__(self, name, status="pass", target_service=None):
        super().__init__(name, target_service=target_service)
        self.status = status

    def run(self):
        return self.result(self.status, f"{self.name} ran")

class BlockingCheck(Check):
    category = "test"

    def __init__(self, name, release: threading.Event):
        super().__init__(name)
        self.release = release

    def run(self):
        self.release.wait(5)
        return self.result("pass", "finished late")

class BrokenCheck(Check):
    category = "test"

    def run(self):
        raise RuntimeError("probe exploded")

class CancellingCheck(Check):
    category = "test"

    def __init__(self, name, aggregator_ref):
        super().__init__(name)
        self.aggregator_ref = aggregator_ref

    def run(self):
        self.aggregator_ref[0].cancel()
        return self.result("pass", "cancelled the run")


@pytest.mark.parametrize("value,expected", [
    (0, "pass"), (79.9, "pass"), (80, "warn"), (82, "warn"), (89.9, "warn"), (90, "fail"), (100, "fail"),
])
def test_grade_boundaries(value, expected):
    assert grade(value, DISK) == expected

def test_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        Thresholds(warn=90, critical=90)

def test_disk_at_82_percent_warns(tmp_path):
    check = DiskUsageCheck(tmp_path, DISK, usage_fn=lambda _: (100, 82, 18))
    result = check.run()
    assert result.status == "warn"
    assert result.value == 82.0

def test_disk_critical_and_missing_mount(tmp_path):
    assert DiskUsageCheck(tmp_path, DISK, usage_fn=lambda _: (100, 95, 5)).run().status == "fail"
    assert DiskUsageCheck(tmp_path / "nope", DISK).run().status == "warn"

def test_resource_check_grades_sampler():
    check = ResourceCheck("memory", "Memory", Thresholds(warn=85, critical=95), lambda: 96.0)
    result = check.run()
    assert result.status == "fail"
    assert "CRITICAL" in result.message

def test_samplers_read_psutil(monkeypatch):
    from homestack import checks

    seen = []

    def cpu_percent(interval=None):
        seen.append(interval)
        return 42.5

    monkeypatch.setattr(checks.psutil, "cpu_percent", cpu_percent)
    monkeypatch.setattr(checks.psutil, "virtual_memory", lambda: SimpleNamespace(percent=87.0))
    assert checks.sample_cpu_percent(0.1) == 42.5
    assert seen == [0.1]
    assert checks.sample_memory_percent() == 87.0
    assert ResourceCheck("memory", "Memory", Thresholds(warn=85, critical=95), checks.sample_memory_percent).run().status == "warn"


@settings(max_examples=100, deadline=None)
@given(statuses=st.lists(st.sampled_from(["pass", "warn", "fail", "info"]), max_size=30))
def test_exit_code_reflects_worst_status(statuses):
    results = [CheckResult(name=f"c{i}", category="test", status=s, message="") for i, s in enumerate(statuses)]
    report = HealthReport.from_results(results, START, START)

    assert report.passed + report.warned + report.failed + report.info == len(statuses)
    if "fail" in statuses:
        assert report.exit_code == 2
    elif "warn" in statuses:
        assert report.exit_code == 1
    else:
        assert report.exit_code == 0
    assert report.to_json()["summary"]["failed"] == statuses.count("fail")


def test_liveness_states():
    controller = FakeController(running=["sonarr", "radarr", "bazarr"], deployed=["sonarr", "radarr", "bazarr", "nzbget"])
    controller.health = {"sonarr": "healthy", "radarr": "unhealthy", "bazarr": "starting"}
    assert LivenessCheck(controller, "sonarr").run().status == "pass"
    assert LivenessCheck(controller, "radarr").run().status == "fail"
    assert LivenessCheck(controller, "bazarr").run().status == "warn"
    assert LivenessCheck(controller, "nzbget").run().status == "fail"
    assert LivenessCheck(controller, "jellyfin").run().status == "info"

def test_daemon_check():
    controller = FakeController()
    assert DockerDaemonCheck(controller).run().status == "pass"
    controller.alive = False
    assert DockerDaemonCheck(controller).run().status == "fail"

def test_network_check_skips_when_an_end_is_down():
    controller = FakeController(running=["sonarr"])
    result = NetworkReachabilityCheck(controller, NetworkPair(source="sonarr", target="prowlarr", port=9696)).run()
    assert result.status == "info"
    assert not [c for c in controller.calls if c[0] == "exec"]

@pytest.mark.parametrize("critical,expected", [(True, "fail"), (False, "warn")])
def test_network_failure_grading(critical, expected):
    controller = FakeController(running=["sonarr", "gluetun"])
    controller.exec_results[("sonarr", "wget")] = ExecResult(returncode=4)
    pair = NetworkPair(source="sonarr", target="gluetun", port=6789, critical=critical)
    assert NetworkReachabilityCheck(controller, pair).run().status == expected

def test_network_success_probes_from_source():
    controller = FakeController(running=["sonarr", "prowlarr"])
    result = NetworkReachabilityCheck(controller, NetworkPair(source="sonarr", target="prowlarr", port=9696)).run()
    assert result.status == "pass"
    [call] = [c for c in controller.calls if c[0] == "exec"]
    assert call[1] == "sonarr"
    assert call[2][-1] == "http://prowlarr:9696"

def test_vpn_check():
    controller = FakeController(running=["gluetun"])
    controller.exec_results[("gluetun", "wget")] = ExecResult(returncode=0, stdout='{"status":"running"}')
    check = VpnTunnelCheck(controller, "gluetun", "http://localhost:8000/v1/openvpn/status")
    assert check.run().status == "pass"

    controller.exec_results[("gluetun", "wget")] = ExecResult(returncode=1)
    controller.exec_results[("gluetun", "ip")] = ExecResult(returncode=1)
    assert check.run().status == "fail"

def test_vpn_timeout_degrades_to_fail():
    controller = FakeController(running=["gluetun"])
    controller.exec_results[("gluetun", "wget")] = ExecResult(returncode=-1, timed_out=True)
    result = run_check(VpnTunnelCheck(controller, "gluetun", "http://localhost:8000/v1/openvpn/status"))
    assert result.status == "fail"

def test_config_presence(tmp_path):
    assert ConfigPresenceCheck("sonarr", tmp_path / "sonarr").run().status == "warn"
    (tmp_path / "sonarr").mkdir()
    assert ConfigPresenceCheck("sonarr", tmp_path / "sonarr").run().status == "warn"
    (tmp_path / "sonarr" / "config.xml").write_text("<Config/>")
    result = ConfigPresenceCheck("sonarr", tmp_path / "sonarr").run()
    assert result.status == "pass"
    assert result.value == 1

def test_accessibility(monkeypatch):
    service = TrackedService(name="sonarr", port=8989)
    assert AccessibilityCheck(FakeController(), service).run().status == "info"

    def refuse(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx, "get", refuse)
    assert AccessibilityCheck(FakeController(running=["sonarr"]), service).run().status == "warn"

    monkeypatch.setattr(httpx, "get", lambda url, **kwargs: httpx.Response(401))
    result = AccessibilityCheck(FakeController(running=["sonarr"]), service).run()
    assert result.status == "pass"
    assert result.value == 401


def test_registry_rejects_duplicates():
    registry = CheckRegistry([StaticCheck("a")])
    with pytest.raises(ValueError):
        registry.register(StaticCheck("a"))
    with pytest.raises(TypeError):
        registry.register(object())

def test_registry_service_selection():
    registry = CheckRegistry([
        StaticCheck("disk"),
        StaticCheck("sonarr", target_service="sonarr"),
        StaticCheck("radarr", target_service="radarr"),
    ])
    assert [c.name for c in registry.select(["sonarr"])] == ["disk", "sonarr"]
    assert [c.name for c in registry.select(["sonarr"], scoped_only=True)] == ["sonarr"]
    assert len(registry.select()) == 3

def test_default_registry(config):
    registry = build_default_registry(config, FakeController(), include_plugins=False)
    categories = [c.category for c in registry]
    assert categories[0] == "docker"
    assert categories.count("container") == 3
    assert "vpn" not in categories
    assert {"network", "disk", "accessibility", "resource", "config"} <= set(categories)


def test_report_keeps_registry_order():
    registry = CheckRegistry([StaticCheck("one"), StaticCheck("two", "warn"), StaticCheck("three", "info")])
    report = HealthAggregator(registry, timeout=2.0).run()
    assert [r.name for r in report.results] == ["one", "two", "three"]
    assert report.exit_code == 1
    assert report.overall == "degraded"

def test_failing_check_does_not_stop_the_others():
    registry = CheckRegistry([BrokenCheck("broken"), StaticCheck("fine")])
    report = HealthAggregator(registry, timeout=2.0).run()
    broken, fine = report.results
    assert broken.status == "fail"
    assert "probe exploded" in broken.message
    assert fine.status == "pass"
    assert report.exit_code == 2

def test_slow_check_times_out():
    release = threading.Event()
    try:
        registry = CheckRegistry([BlockingCheck("slow", release), StaticCheck("fast")])
        report = HealthAggregator(registry, timeout=0.2).run()
    finally:
        release.set()
    slow, fast = report.results
    assert slow.status == "warn"
    assert "no answer" in slow.message
    assert fast.status == "pass"

def test_hung_checks_filling_every_worker_do_not_stall_the_run():
    release = threading.Event()
    registry = CheckRegistry([BlockingCheck("hang-1", release), BlockingCheck("hang-2", release), StaticCheck("queued")])
    outcome = []
    try:
        runner = threading.Thread(
            target=lambda: outcome.append(HealthAggregator(registry, timeout=0.3, max_workers=2).run()),
            daemon=True,
        )
        began = time.monotonic()
        runner.start()
        runner.join(3)
        elapsed = time.monotonic() - began
    finally:
        release.set()
    assert outcome, "aggregator did not return"
    assert elapsed < 3
    hang_1, hang_2, queued = outcome[0].results
    assert hang_1.status == hang_2.status == "warn"
    assert queued.status == "warn"
    assert "no free worker" in queued.message
    assert outcome[0].exit_code == 1

def test_cancelled_run_discards_results():
    ref = []
    aggregator = HealthAggregator(CheckRegistry([CancellingCheck("cancel", ref), StaticCheck("other")]), timeout=2.0)
    ref.append(aggregator)
    with pytest.raises(HealthRunCancelled):
        aggregator.run()

def test_pre_cancelled_event():
    event = threading.Event()
    event.set()
    with pytest.raises(HealthRunCancelled):
        HealthAggregator(CheckRegistry([StaticCheck("a")]), cancel_event=event).run()

def test_health_run_is_audited(config, audit):
    from homestack.audit import get_audit_log

    HealthAggregator(CheckRegistry([StaticCheck("a")]), audit=audit).run(services=["sonarr"])
    [event] = get_audit_log(config.audit_dir)
    assert event["event"] == "health_run"
    assert event["details"]["exit_code"] == 0

def test_plugin_checks_are_registered(config, monkeypatch):
    from homestack import plugins

    class EntryPoint:
        def __init__(self, name, factory):
            self.name = name
            self.factory = factory

        def load(self):
            if self.factory is None:
                raise ImportError("missing module")
            return self.factory

    entry_points = [
        EntryPoint("extra", lambda cfg, ctl: [StaticCheck("plugin-check"), object()]),
        EntryPoint("broken", None),
    ]
    monkeypatch.setattr(plugins.importlib.metadata, "entry_points", lambda group: entry_points)

    registry = CheckRegistry()
    assert plugins.load_check_plugins(config, FakeController(), registry) == ["extra"]
    assert [c.name for c in registry] == ["plugin-check"]
