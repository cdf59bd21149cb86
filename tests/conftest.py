from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from homestack.audit import AuditLogger
from homestack.config import NetworkPair, StackConfig, TrackedService
from homestack.errors import ServiceControlError
from homestack.services import ExecResult
from homestack.snapshot import SnapshotManager
from homestack.store import SnapshotStore

START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TickingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.now
        self.now += self.step
        return value


class FakeController:
    def __init__(self, running: Sequence[str] = (), deployed: Optional[Sequence[str]] = None):
        self.running = set(running)
        self.deployed = set(deployed if deployed is not None else running)
        self.calls: List[Tuple] = []
        self.health: Dict[str, str] = {}
        self.exec_results: Dict[Tuple[str, str], ExecResult] = {}
        self.alive = True
        self.fail_stop = False
        self.fail_start = False

    def ping(self) -> bool:
        return self.alive

    def known_services(self) -> Optional[List[str]]:
        return sorted(self.deployed)

    def stop(self, names: Sequence[str]) -> None:
        self.calls.append(("stop", list(names)))
        if self.fail_stop:
            raise ServiceControlError("compose stop failed")
        self.running -= set(names)

    def start(self, names: Sequence[str]) -> None:
        self.calls.append(("start", list(names)))
        if self.fail_start:
            raise ServiceControlError("compose up failed")
        self.running |= set(names)
        self.deployed |= set(names)

    def exists(self, name: str) -> bool:
        return name in self.deployed

    def is_running(self, name: str) -> bool:
        return name in self.running

    def health_status(self, name: str) -> Optional[str]:
        return self.health.get(name)

    def exec(self, name: str, argv: Sequence[str], timeout: float = 5.0) -> ExecResult:
        self.calls.append(("exec", name, list(argv)))
        return self.exec_results.get((name, argv[0]), ExecResult(returncode=0))

    def actions(self) -> List[str]:
        return [c[0] for c in self.calls if c[0] in ("stop", "start")]


def write_tree(root: Path, files: Dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

def read_tree(root: Path) -> Dict[str, str]:
    if not root.exists():
        return {}
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


LIVE_FILES = {
    "sonarr/config.xml": "<Config>sonarr</Config>",
    "sonarr/sonarr.db": "sonarr-db",
    "sonarr/logs/sonarr.txt": "log line",
    "sonarr/MediaCover/1/poster.jpg": "jpeg",
    "radarr/config.xml": "<Config>radarr</Config>",
    "radarr/cache/blob.bin": "cached",
    "jellyfin/system.xml": "<System/>",
}


@pytest.fixture
def config(tmp_path: Path) -> StackConfig:
    cfg = StackConfig(
        config_root=tmp_path / "config",
        backup_root=tmp_path / "backups",
        compose_dir=tmp_path / "compose",
        log_dir=tmp_path / "logs",
        services=[
            TrackedService(name="sonarr", port=8989),
            TrackedService(name="radarr", port=7878),
            TrackedService(name="jellyfin", port=8096),
        ],
        min_free_bytes=0,
        disk_mounts=[tmp_path],
        network_pairs=[NetworkPair(source="sonarr", target="radarr", port=7878)],
        vpn_service=None,
        lock_timeout=1.0,
    )
    write_tree(cfg.config_root, LIVE_FILES)
    return cfg

@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()

@pytest.fixture
def controller() -> FakeController:
    return FakeController(running=["sonarr", "radarr", "jellyfin"])

@pytest.fixture
def store(config: StackConfig) -> SnapshotStore:
    return SnapshotStore(config.backup_root)

@pytest.fixture
def audit(config: StackConfig) -> AuditLogger:
    return AuditLogger(config.audit_dir)

@pytest.fixture
def manager(config, store, controller, audit, clock) -> SnapshotManager:
    return SnapshotManager(config, store, controller, audit=audit, clock=clock)
