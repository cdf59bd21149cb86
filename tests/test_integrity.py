from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from homestack.integrity import IntegrityVerifier
from homestack.models import Snapshot, SnapshotKind
from homestack.store import SnapshotStore


def stored_snapshot(store: SnapshotStore, data: bytes, snapshot_id: str = "configs_20240301_120000_000000") -> Snapshot:
    snap = Snapshot(
        id=snapshot_id,
        created_at=datetime(2024, 3, 1, 12, tzinfo=timezone.utc),
        kind=SnapshotKind.QUICK,
        archive_path=store.archive_path(snapshot_id),
    )
    return store.persist_bytes(snap, data)


def test_known_digest():
    verifier = IntegrityVerifier()
    assert verifier.digest(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

def test_digest_file_matches_digest(tmp_path):
    verifier = IntegrityVerifier()
    path = tmp_path / "blob"
    data = b"x" * 200_000
    path.write_bytes(data)
    assert verifier.digest_file(path) == verifier.digest(data)

def test_digest_file_format(tmp_path):
    verifier = IntegrityVerifier()
    path = tmp_path / "a.sha256"
    verifier.write_digest_file(path, "ab" * 32, "a.tar.gz")
    assert path.read_text() == f"{'ab' * 32}  a.tar.gz\n"
    assert verifier.read_digest_file(path) == "ab" * 32

@pytest.mark.parametrize("content", ["", "not-a-digest  a.tar.gz\n", "zz" * 32 + "  a.tar.gz\n"])
def test_invalid_digest_file_reads_as_missing(tmp_path, content):
    path = tmp_path / "a.sha256"
    path.write_text(content)
    assert IntegrityVerifier().read_digest_file(path) is None
    assert IntegrityVerifier().read_digest_file(tmp_path / "missing.sha256") is None

def test_missing_digest_never_verifies(tmp_path):
    store = SnapshotStore(tmp_path)
    snap = stored_snapshot(store, b"archive bytes")
    store.digest_path(snap.id).unlink()
    assert IntegrityVerifier().verify(snap) is False

def test_missing_archive_never_verifies(tmp_path):
    store = SnapshotStore(tmp_path)
    snap = stored_snapshot(store, b"archive bytes")
    snap.archive_path.unlink()
    assert IntegrityVerifier().verify(snap) is False


@settings(max_examples=50, deadline=None)
@given(data=st.binary(min_size=1, max_size=4096), position=st.integers(min_value=0))
def test_any_flipped_byte_fails_verification(tmp_path_factory, data, position):
    store = SnapshotStore(tmp_path_factory.mktemp("store"))
    snap = stored_snapshot(store, data)
    verifier = IntegrityVerifier()
    assert verifier.verify(snap) is True

    corrupted = bytearray(data)
    corrupted[position % len(data)] ^= 0xFF
    snap.archive_path.write_bytes(bytes(corrupted))
    assert verifier.verify(snap) is False
