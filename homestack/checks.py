"""
Health check catalogue.

Every check is an independent, idempotent probe returning a graded CheckResult.
"""
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

import httpx
import psutil

from .config import NetworkPair, StackConfig, TrackedService
from .errors import CheckTimeoutError
from .models import CheckResult, CheckStatus, Thresholds
from .services import ServiceController
from .utils import human_size


def grade(value: float, thresholds: Thresholds) -> CheckStatus:
    """`< warn` pass, `[warn, critical)` warn, `>= critical` fail."""
    if value >= thresholds.critical:
        return "fail"
    if value >= thresholds.warn:
        return "warn"
    return "pass"


class Check(ABC):
    category: str = "generic"
    # Status reported when the probe does not answer within the aggregator timeout
    timeout_status: CheckStatus = "warn"
    thresholds: Optional[Thresholds] = None

    def __init__(self, name: str, target_service: Optional[str] = None):
        self.name = name
        self.target_service = target_service

    @property
    def services(self) -> Tuple[str, ...]:
        return (self.target_service,) if self.target_service else ()

    def result(self, status: CheckStatus, message: str, value: Optional[float] = None) -> CheckResult:
        return CheckResult(
            name=self.name,
            category=self.category,
            status=status,
            message=message,
            value=value,
            target_service=self.target_service,
        )

    @abstractmethod
    def run(self) -> CheckResult:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class DockerDaemonCheck(Check):
    category = "docker"
    timeout_status = "fail"

    def __init__(self, controller: ServiceController):
        super().__init__("daemon")
        self.controller = controller

    def run(self) -> CheckResult:
        if self.controller.ping():
            return self.result("pass", "Docker daemon is running")
        return self.result("fail", "Docker daemon is not running")


class LivenessCheck(Check):
    category = "container"
    timeout_status = "fail"

    def __init__(self, controller: ServiceController, service: str):
        super().__init__(service, target_service=service)
        self.controller = controller

    def run(self) -> CheckResult:
        service = self.target_service
        if not self.controller.exists(service):
            return self.result("info", f"{service}: Not deployed")
        if not self.controller.is_running(service):
            return self.result("fail", f"{service}: Stopped")

        health = self.controller.health_status(service)
        if health == "healthy":
            return self.result("pass", f"{service}: Running (healthy)")
        if health == "unhealthy":
            return self.result("fail", f"{service}: Running (unhealthy)")
        if health == "starting":
            return self.result("warn", f"{service}: Running (starting)")
        return self.result("pass", f"{service}: Running (no health check)")


class NetworkReachabilityCheck(Check):
    """Connection attempt from inside one container to another."""
    category = "network"

    def __init__(self, controller: ServiceController, pair: NetworkPair, timeout: float = 5.0):
        super().__init__(f"{pair.source}-{pair.target}", target_service=pair.source)
        self.controller = controller
        self.pair = pair
        self.timeout = timeout
        self.timeout_status = "fail" if pair.critical else "warn"

    @property
    def services(self) -> Tuple[str, ...]:
        return (self.pair.source, self.pair.target)

    def run(self) -> CheckResult:
        pair = self.pair
        label = f"{pair.source} -> {pair.target}:{pair.port}"
        for name in (pair.source, pair.target):
            if not self.controller.is_running(name):
                return self.result("info", f"{label} (skipped, {name} not running)")

        probe = ["wget", "-q", "--spider", f"--timeout={max(1, int(self.timeout))}", f"http://{pair.target}:{pair.port}"]
        outcome = self.controller.exec(pair.source, probe, timeout=self.timeout)
        if outcome.ok:
            return self.result("pass", label)
        reason = "timed out" if outcome.timed_out else "unreachable"
        return self.result(self.timeout_status, f"{label} ({reason})")


class VpnTunnelCheck(Check):
    category = "vpn"
    timeout_status = "fail"

    def __init__(self, controller: ServiceController, service: str, status_url: str, timeout: float = 5.0):
        super().__init__("tunnel", target_service=service)
        self.controller = controller
        self.status_url = status_url
        self.timeout = timeout

    def run(self) -> CheckResult:
        service = self.target_service
        if not self.controller.is_running(service):
            return self.result("warn", f"{service} container not running")

        status = self.controller.exec(service, ["wget", "-qO-", self.status_url], timeout=self.timeout)
        if status.timed_out:
            raise CheckTimeoutError(f"VPN status endpoint on {service} did not answer")
        if status.ok and "running" in status.stdout:
            return self.result("pass", "VPN tunnel is active")
        if self.controller.exec(service, ["ip", "link", "show", "tun0"], timeout=self.timeout).ok:
            return self.result("pass", "VPN tunnel is active (tun0 up)")
        return self.result("fail", "VPN tunnel is down")


DiskUsageFn = Callable[[str], Tuple[int, int, int]]

class DiskUsageCheck(Check):
    category = "disk"

    def __init__(self, mount: Path, thresholds: Thresholds, usage_fn: DiskUsageFn = shutil.disk_usage):
        super().__init__(str(mount))
        self.mount = Path(mount)
        self.thresholds = thresholds
        self.usage_fn = usage_fn

    def run(self) -> CheckResult:
        if not self.mount.is_dir():
            return self.result("warn", f"{self.mount}: Not mounted")
        total, used, free = self.usage_fn(str(self.mount))
        capacity = used + free
        percent = (used * 100.0 / capacity) if capacity else 0.0
        status = grade(percent, self.thresholds)
        message = f"{self.mount}: {percent:.0f}% used ({human_size(free)} free)"
        if status == "fail":
            message += " - CRITICAL"
        return self.result(status, message, value=round(percent, 1))


def sample_cpu_percent(interval: float = 0.5) -> float:
    """CPU busy percentage over a short sampling interval."""
    return float(psutil.cpu_percent(interval=interval))

def sample_memory_percent() -> float:
    return float(psutil.virtual_memory().percent)


class ResourceCheck(Check):
    category = "resource"

    def __init__(self, name: str, label: str, thresholds: Thresholds, sampler: Callable[[], float]):
        super().__init__(name)
        self.label = label
        self.thresholds = thresholds
        self.sampler = sampler

    def run(self) -> CheckResult:
        percent = self.sampler()
        status = grade(percent, self.thresholds)
        message = f"{self.label} usage: {percent:.0f}%"
        if status == "fail":
            message += " - CRITICAL"
        return self.result(status, message, value=round(percent, 1))


class LoadAverageCheck(Check):
    category = "resource"

    def __init__(self, loadavg: Callable[[], Tuple[float, float, float]] = os.getloadavg):
        super().__init__("load")
        self.loadavg = loadavg

    def run(self) -> CheckResult:
        one, five, fifteen = self.loadavg()
        return self.result("info", f"Load average: {one:.2f}, {five:.2f}, {fifteen:.2f}", value=one)


class ConfigPresenceCheck(Check):
    category = "config"

    def __init__(self, service: str, config_dir: Path):
        super().__init__(service, target_service=service)
        self.config_dir = Path(config_dir)

    def run(self) -> CheckResult:
        service = self.target_service
        if not self.config_dir.is_dir():
            return self.result("warn", f"{service}: Config directory missing")
        file_count = sum(len(files) for _, _, files in os.walk(self.config_dir))
        if file_count == 0:
            return self.result("warn", f"{service}: Config directory is empty")
        return self.result("pass", f"{service}: Config directory exists ({file_count} files)", value=file_count)


class AccessibilityCheck(Check):
    """HTTP reachability of a service's published port from the host."""
    category = "accessibility"

    def __init__(self, controller: ServiceController, service: TrackedService, timeout: float = 5.0):
        super().__init__(service.name, target_service=service.name)
        self.controller = controller
        self.service = service
        self.timeout = timeout

    def run(self) -> CheckResult:
        name, port = self.service.name, self.service.port
        if not self.controller.is_running(name):
            return self.result("info", f"{name}: skipped (not running)")
        try:
            response = httpx.get(f"http://{self.service.host}:{port}/", timeout=self.timeout, follow_redirects=False)
        except httpx.HTTPError as e:
            return self.result("warn", f"{name}: Not accessible on port {port} ({type(e).__name__})")
        return self.result("pass", f"{name}: Accessible on port {port} (HTTP {response.status_code})", value=response.status_code)


class CheckRegistry:
    """Ordered, extensible set of checks."""

    def __init__(self, checks: Optional[Iterable[Check]] = None):
        self._checks: List[Check] = []
        for check in checks or []:
            self.register(check)

    def register(self, check: Check) -> Check:
        if not isinstance(check, Check):
            raise TypeError(f"{check!r} is not a Check")
        key = (check.category, check.name)
        if any((c.category, c.name) == key for c in self._checks):
            raise ValueError(f"Duplicate check {check.category}/{check.name}")
        self._checks.append(check)
        return check

    def __iter__(self) -> Iterator[Check]:
        return iter(self._checks)

    def __len__(self) -> int:
        return len(self._checks)

    def select(self, services: Optional[Sequence[str]] = None, scoped_only: bool = False) -> List[Check]:
        """
        Checks applicable to a service filter. Untargeted checks (disk, resources,
        daemon) are kept unless scoped_only is set.
        """
        if not services:
            if scoped_only:
                return [c for c in self._checks if c.services]
            return list(self._checks)
        wanted = set(services)
        selected = []
        for check in self._checks:
            if check.services:
                if wanted.intersection(check.services):
                    selected.append(check)
            elif not scoped_only:
                selected.append(check)
        return selected


def build_default_registry(config: StackConfig, controller: ServiceController, include_plugins: bool = True) -> CheckRegistry:
    """The stock catalogue, in report order, followed by plugin checks."""
    t = config.thresholds
    registry = CheckRegistry()
    registry.register(DockerDaemonCheck(controller))
    for svc in config.services:
        registry.register(LivenessCheck(controller, svc.name))
    for pair in config.network_pairs:
        registry.register(NetworkReachabilityCheck(controller, pair, timeout=config.check_timeout))
    if config.vpn_service:
        registry.register(VpnTunnelCheck(controller, config.vpn_service, config.vpn_status_url, timeout=config.check_timeout))
    for mount in config.disk_mounts:
        registry.register(DiskUsageCheck(mount, t.disk))
    for svc in config.services:
        if svc.port is not None:
            registry.register(AccessibilityCheck(controller, svc, timeout=config.check_timeout))
    registry.register(ResourceCheck("cpu", "CPU", t.cpu, sample_cpu_percent))
    registry.register(ResourceCheck("memory", "Memory", t.memory, sample_memory_percent))
    registry.register(LoadAverageCheck())
    for svc in config.services:
        registry.register(ConfigPresenceCheck(svc.name, config.service_dir(svc.name)))

    if include_plugins:
        from .plugins import load_check_plugins
        load_check_plugins(config, controller, registry)
    return registry
