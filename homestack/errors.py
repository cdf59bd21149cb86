"""
Custom exception hierarchy for homestack.
"""
from typing import Any, Optional


class HomestackError(Exception):
    """Base exception for all homestack errors."""
    pass

class SnapshotError(HomestackError):
    pass

class SnapshotCreationError(SnapshotError):
    pass

class InsufficientSpaceError(SnapshotError):
    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient disk space on backup root. Available: {available // (2**30)} GB, "
            f"Required: {required // (2**30)} GB"
        )

class SnapshotNotFoundError(SnapshotError):
    pass

class CorruptBackupError(SnapshotError):
    pass

class NoBackupsAvailableError(SnapshotError):
    pass

class ManifestError(SnapshotError):
    pass

class ServiceError(HomestackError):
    pass

class ServiceControlError(ServiceError):
    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result

class ServiceNotFoundError(ServiceError):
    pass

class ServiceUnavailableError(ServiceError):
    pass

class RestoreError(HomestackError):
    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result

class PartialRestoreError(RestoreError):
    pass

class PathTraversalError(RestoreError):
    pass

class HealthError(HomestackError):
    pass

class CheckTimeoutError(HealthError):
    pass

class HealthRunCancelled(HealthError):
    pass

class ConfigError(HomestackError):
    pass

class ConfigValidationError(ConfigError):
    pass

class LockHeldError(HomestackError):
    pass
