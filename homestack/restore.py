"""
Restore engine.

A restore walks an explicit state machine:

    Selecting -> Verifying -> SafetyBackup -> Stopping -> Overwriting
              -> Starting -> Validating -> Completed | RolledBack

Integrity problems abort before any service is touched. Once Stopping has
begun the machine runs to the end; termination signals are held until then.
Rollback is never automatic: the operator applies the safety snapshot.
"""
import errno
import os
import shutil
import tarfile
from pathlib import Path
from typing import Callable, List, Optional

from .audit import AuditLogger
from .config import StackConfig
from .errors import (
    CorruptBackupError,
    HomestackError,
    NoBackupsAvailableError,
    PartialRestoreError,
    PathTraversalError,
    RestoreError,
    ServiceControlError,
    ServiceNotFoundError,
)
from .health import HealthAggregator
from .integrity import IntegrityVerifier
from .models import (
    PhaseRecord,
    RestorePhase,
    RestorePlan,
    RestoreRequest,
    RestoreResult,
    ServiceRestoreOutcome,
    Snapshot,
    SnapshotKind,
)
from .services import ServiceController
from .snapshot import SnapshotManager
from .store import META_MEMBER, SnapshotStore
from .utils import Clock, deferred_signals, service_lock, timestamp_id, unique_token, utc_now, validate_path

STAGING_PREFIX = ".homestack-restore-"


class RestoreManager:
    def __init__(
        self,
        config: StackConfig,
        store: SnapshotStore,
        snapshots: SnapshotManager,
        controller: ServiceController,
        verifier: Optional[IntegrityVerifier] = None,
        aggregator: Optional[HealthAggregator] = None,
        audit: Optional[AuditLogger] = None,
        clock: Clock = utc_now,
        on_phase: Optional[Callable[[RestorePhase], None]] = None,
    ):
        self.config = config
        self.store = store
        self.snapshots = snapshots
        self.controller = controller
        self.verifier = verifier or store.verifier
        self.aggregator = aggregator
        self.audit = audit or snapshots.audit
        self.clock = clock
        self.on_phase = on_phase
        self._phases: List[PhaseRecord] = []

    def _enter(self, phase: RestorePhase, quiet: bool = False) -> None:
        self._phases.append(PhaseRecord(phase=phase, at=self.clock()))
        if not quiet:
            self.audit.log("restore_phase", phase=phase.value)
        if self.on_phase is not None:
            self.on_phase(phase)

    # Selecting / Verifying

    def select(self, snapshot_id: Optional[str] = None, allow_unverified: bool = False) -> Snapshot:
        """Resolve a snapshot by id, or the newest trusted one when no id is given."""
        if snapshot_id:
            return self.store.get(snapshot_id)
        if not self.store.list():
            raise NoBackupsAvailableError(f"No snapshots found in {self.store.root}.")
        return self.store.latest(include_untrusted=allow_unverified)

    def verify(self, snapshot: Snapshot, allow_unverified: bool = False) -> None:
        if not snapshot.trusted:
            if allow_unverified:
                return
            raise CorruptBackupError(
                f"Snapshot {snapshot.id} has no digest file and cannot be verified. "
                "Pass an explicit override to restore it anyway."
            )
        if not self.verifier.verify(snapshot):
            raise CorruptBackupError(f"Snapshot {snapshot.id} failed integrity verification. The archive may be corrupted.")

    def target_services(self, snapshot: Snapshot, requested: List[str]) -> List[str]:
        included = snapshot.included_services
        if not requested:
            return included
        for name in requested:
            self.config.service(name)
            if name not in included:
                raise ServiceNotFoundError(f"Service '{name}' is not included in snapshot {snapshot.id}.")
        return [name for name in included if name in requested]

    def _resolve(self, request: RestoreRequest, quiet: bool) -> tuple:
        self._enter(RestorePhase.SELECTING, quiet)
        snapshot = self.select(request.snapshot_id, request.allow_unverified)
        self._enter(RestorePhase.VERIFYING, quiet)
        self.verify(snapshot, request.allow_unverified)
        return snapshot, self.target_services(snapshot, request.services)

    def plan(self, request: RestoreRequest) -> RestorePlan:
        """Selecting + Verifying only. Performs no filesystem writes."""
        self._phases = []
        snapshot, targets = self._resolve(request, quiet=True)
        counts = {r.service: r.file_count for r in snapshot.manifest}
        entries = []
        for name in targets:
            dest = self.config.service_dir(name)
            action = "existing directory will be moved aside" if dest.exists() else "new directory"
            entries.append(ServiceRestoreOutcome(
                service=name,
                status="planned",
                source=f"{snapshot.archive_path.name}:{name}/",
                destination=dest,
                detail=f"{counts.get(name, 0)} files; {action}",
            ))
        return RestorePlan(
            snapshot=snapshot,
            services=entries,
            safety_backup=not request.skip_safety_backup,
            dry_run=True,
        )

    def restore(self, request: RestoreRequest) -> RestoreResult | RestorePlan:
        """
        Run a restore. With dry_run set the plan is returned instead and nothing
        is written.

        Raises PartialRestoreError (carrying the result) when some services
        failed to restore, and ServiceControlError when services could not be
        stopped (before any file is touched) or restarted.
        """
        if request.dry_run:
            return self.plan(request)

        self._phases = []
        started_at = self.clock()
        snapshot, targets = self._resolve(request, quiet=False)
        self.audit.log("restore_start", snapshot_id=snapshot.id, services=targets)

        with service_lock(self.snapshots.lock_dir, targets, timeout=self.config.lock_timeout):
            self._enter(RestorePhase.SAFETY_BACKUP)
            safety_id = None if request.skip_safety_backup else self._safety_backup(targets)

            with deferred_signals():
                self._enter(RestorePhase.STOPPING)
                try:
                    self.controller.stop(targets)
                except ServiceControlError as e:
                    self.audit.log("restore_abort", snapshot_id=snapshot.id, phase="stopping", error=str(e))
                    try:
                        self.controller.start(targets)
                    except ServiceControlError as restart_error:
                        self.audit.log("service_start_failed", services=targets, error=str(restart_error))
                    raise ServiceControlError(f"Failed to stop services, nothing was restored: {e}") from e

                self._enter(RestorePhase.OVERWRITING)
                outcomes = self._overwrite(snapshot, targets)

                self._enter(RestorePhase.STARTING)
                start_error = None
                try:
                    self.controller.start(targets)
                except ServiceControlError as e:
                    start_error = str(e)
                    self.audit.log("service_start_failed", services=targets, error=start_error)

        validation = None
        if request.validate_after and self.aggregator is not None and start_error is None:
            restored = [o.service for o in outcomes if o.status == "restored"]
            if restored:
                self._enter(RestorePhase.VALIDATING)
                validation = self.aggregator.run(services=restored, scoped_only=True)

        self._enter(RestorePhase.COMPLETED)
        result = RestoreResult(
            snapshot_id=snapshot.id,
            phase=RestorePhase.COMPLETED,
            phases=list(self._phases),
            outcomes=outcomes,
            safety_snapshot_id=safety_id,
            validation=validation,
            start_error=start_error,
            started_at=started_at,
            finished_at=self.clock(),
        )
        self.audit.log(
            "restore_end",
            snapshot_id=snapshot.id,
            restored=result.succeeded,
            failed=result.failed,
            safety_snapshot_id=safety_id,
            validation_exit_code=validation.exit_code if validation else None,
        )

        if start_error is not None:
            raise ServiceControlError(f"Configuration restored but services failed to start: {start_error}", result=result)
        if result.failed:
            raise PartialRestoreError(
                f"Restore incomplete: {len(result.succeeded)} succeeded, {len(result.failed)} failed "
                f"({', '.join(result.failed)})",
                result=result,
            )
        return result

    def rollback(self, safety_snapshot_id: str, services: Optional[List[str]] = None) -> RestoreResult:
        """Operator-invoked: apply a safety snapshot without taking another one."""
        safety = self.store.get(safety_snapshot_id)
        if safety.kind is not SnapshotKind.SAFETY:
            raise RestoreError(f"Snapshot {safety_snapshot_id} is not a pre-restore safety snapshot.")
        result = self.restore(RestoreRequest(
            snapshot_id=safety_snapshot_id,
            services=services or [],
            skip_safety_backup=True,
            validate_after=True,
        ))
        record = PhaseRecord(phase=RestorePhase.ROLLED_BACK, at=self.clock())
        self.audit.log("restore_rolled_back", snapshot_id=safety_snapshot_id)
        if self.on_phase is not None:
            self.on_phase(RestorePhase.ROLLED_BACK)
        return result.model_copy(update={"phase": RestorePhase.ROLLED_BACK, "phases": result.phases + [record]})

    # SafetyBackup / Overwriting

    def _safety_backup(self, targets: List[str]) -> Optional[str]:
        try:
            safety = self.snapshots.create(SnapshotKind.SAFETY, services=targets)
        except HomestackError as e:
            # Restoring without a safety net is still better than refusing outright.
            self.audit.log("safety_backup_failed", error=str(e))
            return None
        return safety.id

    def _extract(self, snapshot: Snapshot, targets: List[str], staging: Path) -> None:
        wanted = set(targets)
        with tarfile.open(snapshot.archive_path, mode="r:gz") as tar:
            for member in tar:
                if member.name == META_MEMBER:
                    continue
                top = member.name.split("/", 1)[0]
                if top not in wanted:
                    continue
                validate_path(staging / member.name, staging)
                tar.extract(member, staging, filter="data")

    def _overwrite(self, snapshot: Snapshot, targets: List[str]) -> List[ServiceRestoreOutcome]:
        self.config.config_root.mkdir(parents=True, exist_ok=True)
        staging = self.config.config_root / f"{STAGING_PREFIX}{unique_token()}"
        staging.mkdir()
        try:
            try:
                self._extract(snapshot, targets, staging)
            except (OSError, tarfile.TarError, PathTraversalError) as e:
                self.audit.log("restore_extract_failed", snapshot_id=snapshot.id, error=str(e))
                return [
                    ServiceRestoreOutcome(
                        service=name,
                        status="failed",
                        source=f"{snapshot.archive_path.name}:{name}/",
                        destination=self.config.service_dir(name),
                        detail=f"Failed to extract archive: {e}",
                    )
                    for name in targets
                ]
            stamp = timestamp_id(self.clock())
            return [self._swap_service(snapshot, name, staging, stamp) for name in targets]
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _swap_service(self, snapshot: Snapshot, name: str, staging: Path, stamp: str) -> ServiceRestoreOutcome:
        """Move the live directory aside, then move the restored copy into place."""
        source = staging / name
        dest = self.config.service_dir(name)
        label = f"{snapshot.archive_path.name}:{name}/"
        if not source.is_dir():
            outcome = ServiceRestoreOutcome(
                service=name, status="failed", source=label, destination=dest,
                detail="Service not found in archive",
            )
            self.audit.log("restore_service", service=name, status=outcome.status, detail=outcome.detail)
            return outcome

        moved_aside: Optional[Path] = None
        placed = False
        try:
            if dest.exists() or dest.is_symlink():
                aside = dest.with_name(f"{dest.name}.pre-restore-{stamp}")
                os.rename(dest, aside)
                moved_aside = aside
            try:
                os.rename(source, dest)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                placed = True
                shutil.copytree(source, dest, symlinks=True)
        except OSError as e:
            # Only a partial copy of the snapshot is ever removed here.
            if placed:
                shutil.rmtree(dest, ignore_errors=True)
            if moved_aside is not None and not dest.exists():
                os.rename(moved_aside, dest)
                moved_aside = None
            outcome = ServiceRestoreOutcome(
                service=name, status="failed", source=label, destination=dest,
                moved_aside=moved_aside, detail=f"Failed to restore: {e}",
            )
            self.audit.log("restore_service", service=name, status=outcome.status, detail=outcome.detail)
            return outcome

        outcome = ServiceRestoreOutcome(
            service=name, status="restored", source=label, destination=dest, moved_aside=moved_aside,
            detail=f"Previous configuration kept at {moved_aside}" if moved_aside else "No previous configuration",
        )
        self.audit.log("restore_service", service=name, status=outcome.status, moved_aside=str(moved_aside or ""))
        return outcome
