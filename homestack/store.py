"""
On-disk snapshot store.

Layout per snapshot id under the backup root:
    <id>.tar.gz          archive
    <id>.sha256          digest of the archive (sha256sum format)
    <id>_manifest.txt    human-readable inclusion record
"""
import json
import os
import shutil
import tarfile
from pathlib import Path
from typing import List, Optional

from .errors import ManifestError, NoBackupsAvailableError, SnapshotCreationError, SnapshotNotFoundError
from .integrity import IntegrityVerifier
from .manifest import load_manifest, serialize_manifest
from .models import Snapshot
from .retention import order_newest_first
from .utils import unique_token

ARCHIVE_SUFFIX = ".tar.gz"
DIGEST_SUFFIX = ".sha256"
MANIFEST_SUFFIX = "_manifest.txt"
PARTIAL_SUFFIX = ".partial"
META_MEMBER = ".snapshot_meta.json"


class SnapshotStore:
    def __init__(self, root: Path, verifier: Optional[IntegrityVerifier] = None):
        self.root = Path(root)
        self.verifier = verifier or IntegrityVerifier()
        self.skipped: List[str] = []

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def archive_path(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}{ARCHIVE_SUFFIX}"

    def digest_path(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}{DIGEST_SUFFIX}"

    def manifest_path(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}{MANIFEST_SUFFIX}"

    def temp_archive_path(self) -> Path:
        """A temporary archive name no concurrent writer can share."""
        self.ensure_root()
        return self.root / f".{unique_token()}{ARCHIVE_SUFFIX}{PARTIAL_SUFFIX}"

    def free_space(self) -> int:
        self.ensure_root()
        return shutil.disk_usage(self.root).free

    def _load(self, archive: Path) -> Snapshot:
        snapshot_id = archive.name[: -len(ARCHIVE_SUFFIX)]
        manifest = self.manifest_path(snapshot_id)
        snap: Optional[Snapshot] = None
        if manifest.is_file():
            try:
                snap = load_manifest(manifest.read_text(encoding="utf-8"), archive)
            except ManifestError:
                snap = None
        if snap is None:
            snap = self._load_from_archive(archive)
        digest = self.verifier.read_digest_file(self.digest_path(snapshot_id))
        return snap.model_copy(update={"digest": digest})

    def _load_from_archive(self, archive: Path) -> Snapshot:
        """Rebuild metadata from the member embedded at the head of the archive."""
        try:
            with tarfile.open(archive, mode="r:gz") as tar:
                member = tar.next()
                if member is None or member.name != META_MEMBER:
                    raise ManifestError(f"{archive.name} has no embedded metadata.")
                f_in = tar.extractfile(member)
                if f_in is None:
                    raise ManifestError(f"{archive.name} has unreadable metadata.")
                data = json.loads(f_in.read().decode("utf-8"))
        except (OSError, tarfile.TarError, json.JSONDecodeError) as e:
            raise ManifestError(f"Failed to read metadata from {archive.name}: {e}") from e
        try:
            return Snapshot(**data, archive_path=archive)
        except ValueError as e:
            raise ManifestError(f"Invalid metadata in {archive.name}: {e}") from e

    def list(self) -> List[Snapshot]:
        """All snapshots, newest first. Unreadable ones are recorded in `skipped`."""
        self.skipped = []
        if not self.root.is_dir():
            return []
        snapshots: List[Snapshot] = []
        for archive in self.root.glob(f"*{ARCHIVE_SUFFIX}"):
            if archive.name.startswith(".") or not archive.is_file():
                continue
            try:
                snapshots.append(self._load(archive))
            except ManifestError:
                self.skipped.append(archive.name)
        return order_newest_first(snapshots)

    def orphans(self) -> List[str]:
        """Ids with a manifest but no archive: evidence of a missing snapshot."""
        if not self.root.is_dir():
            return []
        orphaned = []
        for manifest in self.root.glob(f"*{MANIFEST_SUFFIX}"):
            snapshot_id = manifest.name[: -len(MANIFEST_SUFFIX)]
            if not self.archive_path(snapshot_id).exists():
                orphaned.append(snapshot_id)
        return sorted(orphaned)

    def get(self, snapshot_id: str) -> Snapshot:
        archive = self.archive_path(snapshot_id)
        if not archive.is_file():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found in {self.root}.")
        return self._load(archive)

    def latest(self, include_untrusted: bool = False) -> Snapshot:
        snapshots = self.list()
        if not snapshots:
            raise NoBackupsAvailableError(f"No snapshots found in {self.root}.")
        for snap in snapshots:
            if snap.trusted or include_untrusted:
                return snap
        raise NoBackupsAvailableError(
            f"No snapshot with a digest found in {self.root}. Use an explicit override to restore an unverified snapshot."
        )

    def persist(self, snapshot: Snapshot, temp_archive: Path) -> Snapshot:
        """
        Move a finished temporary archive into place.
        The archive only appears under its final name once its digest and
        manifest are on disk.
        """
        final_archive = self.archive_path(snapshot.id)
        if final_archive.exists():
            temp_archive.unlink(missing_ok=True)
            raise SnapshotCreationError(f"Snapshot '{snapshot.id}' already exists.")

        written: List[Path] = []
        try:
            digest = self.verifier.digest_file(temp_archive)
            stored = snapshot.model_copy(update={
                "archive_path": final_archive,
                "digest": digest,
                "size_bytes": temp_archive.stat().st_size,
            })

            manifest = self.manifest_path(snapshot.id)
            tmp_manifest = manifest.with_name(f".{manifest.name}{PARTIAL_SUFFIX}")
            tmp_manifest.write_text(serialize_manifest(stored), encoding="utf-8")
            os.replace(tmp_manifest, manifest)
            written.append(manifest)

            digest_file = self.digest_path(snapshot.id)
            tmp_digest = digest_file.with_name(f".{digest_file.name}{PARTIAL_SUFFIX}")
            self.verifier.write_digest_file(tmp_digest, digest, final_archive.name)
            os.replace(tmp_digest, digest_file)
            written.append(digest_file)

            os.replace(temp_archive, final_archive)
            return stored
        except OSError as e:
            for path in written:
                path.unlink(missing_ok=True)
            temp_archive.unlink(missing_ok=True)
            raise SnapshotCreationError(f"Failed to persist snapshot '{snapshot.id}': {e}") from e

    def persist_bytes(self, snapshot: Snapshot, data: bytes) -> Snapshot:
        temp = self.temp_archive_path()
        temp.write_bytes(data)
        return self.persist(snapshot, temp)

    def delete(self, snapshot_id: str) -> None:
        """Remove digest, then archive, then manifest."""
        if not self.archive_path(snapshot_id).exists() and not self.manifest_path(snapshot_id).exists():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found in {self.root}.")
        self.digest_path(snapshot_id).unlink(missing_ok=True)
        self.archive_path(snapshot_id).unlink(missing_ok=True)
        self.manifest_path(snapshot_id).unlink(missing_ok=True)

