"""
Exception taxonomy shared by the reconciler and its collaborators.

NotFoundError is the only error the reconciler handles locally (idempotent user
deletion). Everything else propagates and aborts the current run.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class NotFoundError(SyncError):
    """Raised when a lookup by key finds nothing."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class TransientIOError(SyncError):
    """Raised when a back end call fails (network, API or store error)."""
    pass


class DirectoryError(TransientIOError):
    """Raised when the upstream directory cannot be read."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when the upstream directory cannot be reached."""
    pass


class ProvisioningAPIError(TransientIOError):
    """Raised when the provisioning API returns an error."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class ProvisioningAuthenticationError(ProvisioningAPIError):
    """Raised when the provisioning API rejects our credentials."""
    pass


class ConflictError(ProvisioningAPIError):
    """Raised when a create call collides with an existing resource."""
    pass


class CacheError(TransientIOError):
    """Raised when the membership cache cannot be read or written."""
    pass


class InvariantViolation(SyncError):
    """Raised when reconciliation state is inconsistent and the run must stop."""
    pass
