"""
Background scheduler and systemd integration.

Runs a quick snapshot followed by retention on one interval, and a health
run on another. Each job outcome is written to the audit log.
"""
import os
import sys
import time
from pathlib import Path
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore

from .audit import AuditLogger
from .config import StackConfig, get_config_dir
from .errors import HomestackError
from .health import HealthAggregator
from .models import SnapshotKind
from .snapshot import SnapshotManager
from .utils import setup_signal_handlers

PID_FILENAME = "scheduler.pid"


class ScheduleRunner:
    def __init__(
        self,
        config: StackConfig,
        snapshots: SnapshotManager,
        aggregator_factory: Callable[[], HealthAggregator],
        snapshot_hours: float = 24.0,
        health_minutes: float = 15.0,
        audit: Optional[AuditLogger] = None,
        pid_file: Optional[Path] = None,
    ):
        if snapshot_hours <= 0 or health_minutes <= 0:
            raise ValueError("Schedule intervals must be positive.")
        self.config = config
        self.snapshots = snapshots
        self.aggregator_factory = aggregator_factory
        self.snapshot_hours = snapshot_hours
        self.health_minutes = health_minutes
        self.audit = audit or snapshots.audit
        self.scheduler = BackgroundScheduler()
        self.pid_file = pid_file or get_config_dir() / PID_FILENAME

    def is_running(self) -> bool:
        """Check if a scheduler is already running via the PID file."""
        if not self.pid_file.exists():
            return False
        try:
            pid = int(self.pid_file.read_text())
            os.kill(pid, 0)
            return True
        except (ValueError, OSError):
            self.pid_file.unlink(missing_ok=True)
            return False

    def snapshot_job(self) -> None:
        self.audit.log("schedule_job", job="snapshot", status="start")
        try:
            snap = self.snapshots.create(SnapshotKind.QUICK)
            expired = self.snapshots.expire()
        except HomestackError as e:
            self.audit.log("schedule_job", job="snapshot", status="failed", error=str(e))
            return
        self.audit.log("schedule_job", job="snapshot", status="success", snapshot_id=snap.id, expired=expired)

    def health_job(self) -> None:
        try:
            report = self.aggregator_factory().run()
        except HomestackError as e:
            self.audit.log("schedule_job", job="health", status="failed", error=str(e))
            return
        self.audit.log("schedule_job", job="health", status=report.overall, exit_code=report.exit_code)

    def start(self, block: bool = True) -> None:
        if self.is_running():
            raise RuntimeError("A homestack scheduler is already running.")

        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))

        self.scheduler.add_job(self.snapshot_job, "interval", hours=self.snapshot_hours, id="snapshot")
        self.scheduler.add_job(self.health_job, "interval", minutes=self.health_minutes, id="health")
        self.scheduler.start()

        if not block:
            return
        setup_signal_handlers(self.stop)
        try:
            while True:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
        self.pid_file.unlink(missing_ok=True)


def generate_systemd_unit(snapshot_hours: float, health_minutes: float) -> str:
    """Generate systemd .service content."""
    python_exec = sys.executable
    cmd = (
        f"{python_exec} -m homestack.cli schedule "
        f"--snapshot-interval {snapshot_hours:g} --health-interval {health_minutes:g}"
    )

    return f"""[Unit]
Description=homestack scheduled snapshots and health checks
After=docker.service network-online.target
Wants=docker.service

[Service]
Type=simple
ExecStart={cmd}
Restart=on-failure
RestartSec=30
StandardOutput=journal
StandardError=journal
SyslogIdentifier=homestack

[Install]
WantedBy=multi-user.target
"""
