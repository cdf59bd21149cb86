"""
Pydantic v2 data models for homestack.
"""
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)

class SnapshotKind(str, Enum):
    STANDARD = "standard"
    QUICK = "quick"
    FULL = "full"
    SAFETY = "safety"

    @property
    def stops_services(self) -> bool:
        return self in (SnapshotKind.STANDARD, SnapshotKind.FULL)

    @property
    def applies_exclusions(self) -> bool:
        return self in (SnapshotKind.STANDARD, SnapshotKind.QUICK)

    @property
    def id_prefix(self) -> str:
        return "pre-restore-safety" if self is SnapshotKind.SAFETY else "configs"

class ManifestRecord(FrozenModel):
    service: str
    included: bool
    file_count: int = 0

class Snapshot(FrozenModel):
    id: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+$")
    created_at: datetime
    kind: SnapshotKind
    manifest: List[ManifestRecord] = Field(default_factory=list)
    archive_path: Path
    digest: Optional[str] = None
    size_bytes: int = 0
    hostname: str = ""
    excluded_patterns: List[str] = Field(default_factory=list)

    @property
    def trusted(self) -> bool:
        """A snapshot without a digest is informational only."""
        return self.digest is not None

    @property
    def included_services(self) -> List[str]:
        return [r.service for r in self.manifest if r.included]

    @property
    def file_count(self) -> int:
        return sum(r.file_count for r in self.manifest)

class RetentionPolicy(FrozenModel):
    max_age: timedelta
    max_count: int = Field(..., ge=1)

    @classmethod
    def from_days(cls, max_age_days: int, max_count: int) -> "RetentionPolicy":
        return cls(max_age=timedelta(days=max_age_days), max_count=max_count)

class Thresholds(FrozenModel):
    warn: float
    critical: float

    @model_validator(mode="after")
    def check_order(self) -> "Thresholds":
        if self.warn >= self.critical:
            raise ValueError("warn threshold must be below critical threshold")
        return self

CheckStatus = Literal["pass", "warn", "fail", "info"]

class CheckResult(FrozenModel):
    name: str
    category: str
    status: CheckStatus
    message: str
    value: Optional[float] = None
    target_service: Optional[str] = None

class HealthReport(FrozenModel):
    results: List[CheckResult] = Field(default_factory=list)
    passed: int = 0
    warned: int = 0
    failed: int = 0
    info: int = 0
    exit_code: Literal[0, 1, 2] = 0
    started_at: datetime
    finished_at: datetime

    @classmethod
    def from_results(cls, results: List[CheckResult], started_at: datetime, finished_at: datetime) -> "HealthReport":
        """Fold check results into counts and an exit code. Every result is counted."""
        counts = {"pass": 0, "warn": 0, "fail": 0, "info": 0}
        for r in results:
            counts[r.status] += 1
        exit_code = 2 if counts["fail"] else 1 if counts["warn"] else 0
        return cls(
            results=list(results),
            passed=counts["pass"],
            warned=counts["warn"],
            failed=counts["fail"],
            info=counts["info"],
            exit_code=exit_code,
            started_at=started_at,
            finished_at=finished_at,
        )

    @property
    def overall(self) -> str:
        return ("healthy", "degraded", "critical")[self.exit_code]

    @property
    def total(self) -> int:
        return self.passed + self.warned + self.failed

    def to_json(self) -> Dict[str, Any]:
        return {
            "timestamp": self.finished_at.isoformat(),
            "exit_code": self.exit_code,
            "overall": self.overall,
            "summary": {
                "passed": self.passed,
                "warned": self.warned,
                "failed": self.failed,
                "info": self.info,
            },
            "checks": [
                {
                    "category": r.category,
                    "check": r.name,
                    "status": r.status,
                    "details": r.message,
                    "value": r.value,
                    "service": r.target_service,
                }
                for r in self.results
            ],
        }

class RestorePhase(str, Enum):
    SELECTING = "selecting"
    VERIFYING = "verifying"
    SAFETY_BACKUP = "safety_backup"
    STOPPING = "stopping"
    OVERWRITING = "overwriting"
    STARTING = "starting"
    VALIDATING = "validating"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"

class PhaseRecord(FrozenModel):
    phase: RestorePhase
    at: datetime

class ServiceRestoreOutcome(FrozenModel):
    service: str
    status: Literal["restored", "failed", "skipped", "planned"]
    source: str
    destination: Path
    moved_aside: Optional[Path] = None
    detail: str = ""

class RestoreRequest(FrozenModel):
    snapshot_id: Optional[str] = None
    latest: bool = False
    services: List[str] = Field(default_factory=list)
    dry_run: bool = False
    skip_safety_backup: bool = False
    allow_unverified: bool = False
    validate_after: bool = True

    @field_validator("services")
    @classmethod
    def dedupe_services(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

class RestorePlan(FrozenModel):
    snapshot: Snapshot
    services: List[ServiceRestoreOutcome]
    safety_backup: bool
    dry_run: bool = True

class RestoreResult(FrozenModel):
    snapshot_id: str
    phase: RestorePhase
    phases: List[PhaseRecord] = Field(default_factory=list)
    outcomes: List[ServiceRestoreOutcome] = Field(default_factory=list)
    safety_snapshot_id: Optional[str] = None
    validation: Optional[HealthReport] = None
    start_error: Optional[str] = None
    started_at: datetime
    finished_at: datetime

    @property
    def succeeded(self) -> List[str]:
        return [o.service for o in self.outcomes if o.status == "restored"]

    @property
    def failed(self) -> List[str]:
        return [o.service for o in self.outcomes if o.status == "failed"]

    def phase_at(self, phase: RestorePhase) -> Optional[datetime]:
        for rec in self.phases:
            if rec.phase is phase:
                return rec.at
        return None
