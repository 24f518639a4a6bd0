"""Exception hierarchy for allowlist-sync.

    AllowlistSyncError
    ├── ConfigError                 fatal at startup
    ├── ResolutionError             no consistent external IP this cycle
    │   └── ProbeError              a single probe failed
    ├── ControlPlaneError           any failed call against the access list
    │   ├── TransientError          network, throttling, list busy (retried)
    │   ├── VersionConflictError    stale resource version (retried)
    │   ├── ConflictError           duplicate/overlapping entry (not retried)
    │   ├── QuotaExceededError      list is full (not retried)
    │   └── AccessListNotFoundError unknown list id
    ├── RetryExhaustedError         attempt ceiling reached
    └── ShutdownCleanupError        owned entries left behind on exit
"""

from __future__ import annotations

from typing import List, Optional


class AllowlistSyncError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(AllowlistSyncError):
    pass


class ResolutionError(AllowlistSyncError):
    pass


class ProbeError(ResolutionError):
    def __init__(self, probe: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"probe '{probe}' {message}", cause)
        self.probe = probe


# =============================================================================
# Control plane
# =============================================================================


class ControlPlaneError(AllowlistSyncError):
    """A call against the access-list resource failed.

    `code` carries the error code reported by the control plane, when there is one.
    """

    def __init__(
        self, message: str, code: str = "", cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause)
        self.code = code


class TransientError(ControlPlaneError):
    pass


class VersionConflictError(ControlPlaneError):
    pass


class ConflictError(ControlPlaneError):
    pass


class QuotaExceededError(ControlPlaneError):
    pass


class AccessListNotFoundError(ControlPlaneError):
    pass


class RetryExhaustedError(AllowlistSyncError):
    def __init__(self, action: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{action} failed after {attempts} attempt(s)", last_error)
        self.action = action
        self.attempts = attempts
        self.last_error = last_error


class ShutdownCleanupError(AllowlistSyncError):
    def __init__(self, cidrs: List[str], reasons: List[str]):
        listed = ", ".join(cidrs) if cidrs else "unknown entries"
        super().__init__(
            f"could not remove {listed} during shutdown; manual cleanup may be needed"
            + (f" ({'; '.join(reasons)})" if reasons else "")
        )
        self.cidrs = cidrs
        self.reasons = reasons
