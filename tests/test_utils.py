import threading
from datetime import datetime, timezone

import pytest

from homestack.errors import LockHeldError, PathTraversalError
from homestack.utils import cancel_on_signals, human_size, service_lock, timestamp_id, validate_path


def test_timestamp_id_has_microseconds():
    moment = datetime(2024, 3, 1, 12, 30, 5, 123456, tzinfo=timezone.utc)
    assert timestamp_id(moment) == "20240301_123005_123456"

@pytest.mark.parametrize("nbytes,expected", [(0, "0 B"), (512, "512 B"), (1536, "1.5 KiB"), (5 * 2**30, "5.0 GiB")])
def test_human_size(nbytes, expected):
    assert human_size(nbytes) == expected

def test_validate_path(tmp_path):
    assert validate_path(tmp_path / "sonarr" / "config.xml", tmp_path) == (tmp_path / "sonarr" / "config.xml").resolve()
    with pytest.raises(PathTraversalError):
        validate_path(tmp_path / ".." / "etc" / "passwd", tmp_path)

def test_service_lock_is_exclusive(tmp_path):
    with service_lock(tmp_path, ["sonarr", "radarr"]):
        with pytest.raises(LockHeldError):
            with service_lock(tmp_path, ["radarr"], timeout=0):
                pass
        with service_lock(tmp_path, ["jellyfin"], timeout=0):
            pass
    with service_lock(tmp_path, ["radarr"], timeout=0):
        pass

def test_cancel_on_signals_sets_event():
    import os
    import signal

    event = threading.Event()
    with cancel_on_signals(event):
        os.kill(os.getpid(), signal.SIGTERM)
    assert event.is_set()
