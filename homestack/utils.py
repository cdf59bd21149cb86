"""
Core utilities for homestack.
"""
import fcntl
import os
import signal
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, List

from .errors import LockHeldError, PathTraversalError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def timestamp_id(moment: datetime) -> str:
    """Return a YYYYMMDD_HHMMSS_ffffff formatted string."""
    return moment.strftime("%Y%m%d_%H%M%S_%f")

def unique_token() -> str:
    """Creation-time-unique token used for temporary file names."""
    return f"{time.time_ns()}_{os.getpid()}"

def validate_path(path: str | Path, base_dir: str | Path) -> Path:
    """
    Resolve a path and ensure it falls strictly under the base_dir to prevent directory traversal.
    """
    resolved_path = Path(path).resolve()
    resolved_base = Path(base_dir).resolve()

    if resolved_path != resolved_base and resolved_base not in resolved_path.parents:
        raise PathTraversalError(f"Path '{path}' escapes base directory '{base_dir}'.")
    return resolved_path

def human_size(nbytes: int) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    size = float(nbytes)
    while size >= 1024 and i < len(suffixes) - 1:
        size /= 1024.0
        i += 1
    if i == 0:
        return f"{int(size)} {suffixes[i]}"
    return f"{size:.1f} {suffixes[i]}"

def count_files(directory: Path) -> int:
    total = 0
    for _, _, files in os.walk(directory):
        total += len(files)
    return total

def setup_signal_handlers(cleanup_fn: Callable[[], None]) -> None:
    """Install SIGINT/SIGTERM handlers that invoke the cleanup function and exit."""
    def handler(signum: Any, frame: Any) -> None:
        cleanup_fn()
        sys.exit(1)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)

@contextmanager
def deferred_signals() -> Generator[List[int], None, None]:
    """
    Hold SIGINT/SIGTERM until the block finishes, then re-deliver the first one.
    Only effective from the main thread.
    """
    received: List[int] = []
    try:
        previous = {
            sig: signal.signal(sig, lambda signum, frame: received.append(signum))
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
    except ValueError:
        # signal handlers can only be installed from the main thread
        yield received
        return
    try:
        yield received
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
        if received:
            os.kill(os.getpid(), received[0])

@contextmanager
def service_lock(lock_dir: Path, services: Iterable[str], timeout: float = 30.0) -> Generator[None, None, None]:
    """
    Advisory flock per service, acquired in sorted order.
    Raises LockHeldError if a lock cannot be taken within the timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    held: List[int] = []
    try:
        for name in sorted(set(services)):
            fd = os.open(lock_dir / f"{name}.lock", os.O_RDWR | os.O_CREAT, 0o600)
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        os.close(fd)
                        raise LockHeldError(
                            f"Service '{name}' is locked by another snapshot or restore in progress."
                        )
                    time.sleep(0.1)
            held.append(fd)
        yield
    finally:
        for fd in reversed(held):
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

@contextmanager
def cancel_on_signals(event: threading.Event) -> Generator[threading.Event, None, None]:
    """Set the event on SIGINT/SIGTERM for the duration of the block."""
    try:
        previous = {
            sig: signal.signal(sig, lambda signum, frame: event.set())
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
    except ValueError:
        yield event
        return
    try:
        yield event
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
