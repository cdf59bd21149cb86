"""
Snapshot lifecycle: create, verify, expire and delete configuration snapshots.
"""
import fnmatch
import io
import os
import socket
import tarfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .audit import AuditLogger
from .config import StackConfig
from .errors import CorruptBackupError, InsufficientSpaceError, ServiceControlError, SnapshotCreationError
from .integrity import IntegrityVerifier
from .models import ManifestRecord, RetentionPolicy, Snapshot, SnapshotKind
from .retention import select_expired
from .services import ServiceController
from .store import META_MEMBER, SnapshotStore
from .utils import Clock, service_lock, timestamp_id, utc_now

LOCK_DIRNAME = ".locks"


def is_excluded(arcname: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(arcname, p) for p in patterns)

def collect_service_files(service_dir: Path, service: str, patterns: Sequence[str]) -> List[Tuple[Path, str]]:
    """Walk a service directory, returning (path, arcname) pairs not matched by the exclusions."""
    entries: List[Tuple[Path, str]] = []
    for root, dirs, files in os.walk(service_dir):
        root_path = Path(root)
        rel_root = root_path.relative_to(service_dir).as_posix()
        prefix = service if rel_root == "." else f"{service}/{rel_root}"
        # prune excluded directories before descending
        dirs[:] = sorted(d for d in dirs if not is_excluded(f"{prefix}/{d}/", patterns))
        for name in sorted(files):
            arcname = f"{prefix}/{name}"
            if is_excluded(arcname, patterns):
                continue
            entries.append((root_path / name, arcname))
    return entries


class SnapshotManager:
    def __init__(
        self,
        config: StackConfig,
        store: SnapshotStore,
        controller: ServiceController,
        verifier: Optional[IntegrityVerifier] = None,
        audit: Optional[AuditLogger] = None,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.store = store
        self.controller = controller
        self.verifier = verifier or store.verifier
        self.audit = audit or AuditLogger(config.audit_dir)
        self.clock = clock

    @property
    def lock_dir(self) -> Path:
        return self.store.root / LOCK_DIRNAME

    def check_space(self) -> int:
        free = self.store.free_space()
        if free < self.config.min_free_bytes:
            raise InsufficientSpaceError(free, self.config.min_free_bytes)
        return free

    def create(self, kind: SnapshotKind | str = SnapshotKind.STANDARD, services: Optional[Sequence[str]] = None) -> Snapshot:
        """
        Archive the tracked service directories into a new snapshot.

        standard/full stop the running services first and start them again
        afterwards; quick and safety read the live directories as they are.
        """
        kind = SnapshotKind(kind)
        names = self.config.resolve_services(services)
        self.check_space()

        if not kind.stops_services:
            snap = self._write(kind, names)
            self.audit.log("snapshot_create", snapshot_id=snap.id, kind=kind.value, services=names, size=snap.size_bytes)
            return snap

        with service_lock(self.lock_dir, names, timeout=self.config.lock_timeout):
            running = [n for n in names if self.controller.is_running(n)]
            try:
                self.controller.stop(running)
            except ServiceControlError:
                self._restart(running, None)
                raise
            try:
                snap = self._write(kind, names)
            except BaseException:
                self._restart(running, None)
                raise
            self._restart(running, snap.id)

        self.audit.log("snapshot_create", snapshot_id=snap.id, kind=kind.value, services=names, size=snap.size_bytes)
        return snap

    def _restart(self, running: List[str], snapshot_id: Optional[str]) -> None:
        try:
            self.controller.start(running)
        except ServiceControlError as e:
            self.audit.log("service_start_failed", services=running, error=str(e), snapshot_id=snapshot_id)
            if snapshot_id is not None:
                raise ServiceControlError(
                    f"Snapshot {snapshot_id} was created but services failed to restart: {e}"
                ) from e

    def _write(self, kind: SnapshotKind, names: List[str]) -> Snapshot:
        now = self.clock()
        snap_id = f"{kind.id_prefix}_{timestamp_id(now)}"
        patterns = list(self.config.exclude_patterns) if kind.applies_exclusions else []

        records: List[ManifestRecord] = []
        members: List[Tuple[Path, str]] = []
        for name in names:
            service_dir = self.config.service_dir(name)
            if not service_dir.is_dir():
                records.append(ManifestRecord(service=name, included=False))
                continue
            files = collect_service_files(service_dir, name, patterns)
            records.append(ManifestRecord(service=name, included=True, file_count=len(files)))
            members.extend(files)

        temp = self.store.temp_archive_path()
        snapshot = Snapshot(
            id=snap_id,
            created_at=now,
            kind=kind,
            manifest=records,
            archive_path=temp,
            hostname=socket.gethostname(),
            excluded_patterns=patterns,
        )
        try:
            with tarfile.open(temp, mode="w:gz", compresslevel=6) as tar:
                # Metadata first so the store can rebuild a lost manifest cheaply
                meta = snapshot.model_dump_json(exclude={"archive_path", "digest", "size_bytes"}).encode("utf-8")
                ti = tarfile.TarInfo(name=META_MEMBER)
                ti.size = len(meta)
                ti.mtime = int(now.timestamp())
                tar.addfile(ti, io.BytesIO(meta))

                for name in names:
                    if self.config.service_dir(name).is_dir():
                        tar.add(self.config.service_dir(name), arcname=name, recursive=False)
                for path, arcname in members:
                    tar.add(path, arcname=arcname, recursive=False)
        except (OSError, tarfile.TarError) as e:
            temp.unlink(missing_ok=True)
            raise SnapshotCreationError(f"Failed to create snapshot {snap_id}: {e}") from e

        return self.store.persist(snapshot, temp)

    def verify(self, snapshot_id: str) -> bool:
        ok = self.verifier.verify(self.store.get(snapshot_id))
        self.audit.log("snapshot_verify", snapshot_id=snapshot_id, ok=ok)
        return ok

    def verify_all(self) -> Dict[str, bool]:
        results = {snap.id: self.verifier.verify(snap) for snap in self.store.list()}
        self.audit.log(
            "snapshot_verify_all",
            verified=sum(results.values()),
            failed=len(results) - sum(results.values()),
        )
        return results

    def expire(self, policy: Optional[RetentionPolicy] = None) -> List[str]:
        """Delete snapshots the retention policy expires; returns the deleted ids."""
        policy = policy or self.config.retention.policy()
        expired = select_expired(self.store.list(), policy, self.clock())
        deleted: List[str] = []
        for snap in expired:
            self.store.delete(snap.id)
            deleted.append(snap.id)
        self.audit.log(
            "snapshot_expire",
            deleted=deleted,
            max_age_days=policy.max_age.days,
            max_count=policy.max_count,
        )
        return deleted

    def delete(self, snapshot_id: str) -> None:
        self.store.delete(snapshot_id)
        self.audit.log("snapshot_delete", snapshot_id=snapshot_id)

    def read_members(self, snapshot_id: str) -> List[Tuple[str, int]]:
        """List archive members (name, size) for previews."""
        snap = self.store.get(snapshot_id)
        try:
            with tarfile.open(snap.archive_path, mode="r:gz") as tar:
                return [(m.name, m.size) for m in tar.getmembers() if m.name != META_MEMBER and m.isfile()]
        except (OSError, tarfile.TarError) as e:
            raise CorruptBackupError(f"Failed to read archive {snap.archive_path.name}: {e}") from e
