"""Error taxonomy for reconciler runs.

Fatal errors (AuthError, FetchError during baseline reads) end the run with
exit code 2 before anything is persisted. The rest are caught at the
smallest scope and turned into incident or audit records.
"""

from typing import Optional


class OpsError(Exception):
    """Base class for all reconciler errors."""


class AuthError(OpsError):
    """Credentials missing or rejected by the control plane."""


class FetchError(OpsError):
    """Control plane unreachable or returned a non-2xx response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CheckError(OpsError):
    """A single check could not be evaluated."""


class RemediationError(OpsError):
    """A fix attempt failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SupervisorError(OpsError):
    """Process manager command failed or is unavailable."""
