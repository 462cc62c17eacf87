"""Custom exception hierarchy for the tmacloud file-tree layer.

Every error carries a short ``kind`` string so API layers can map it to a
structured failure without matching on class names.
"""


class TreeError(Exception):
    """Base exception for all file-tree errors."""

    kind = "error"


class NotFoundError(TreeError):
    """Raised when an entry, share token, or physical object does not exist."""

    kind = "not_found"


class ShareExpiredError(NotFoundError):
    """Raised when a share token is past its ``expires_at``."""

    kind = "expired"


class NameConflictError(TreeError):
    """Raised when a live sibling of the same type already has the name."""

    kind = "name_conflict"


class CycleRejectedError(TreeError):
    """Raised when a move or copy would place a folder inside itself."""

    kind = "cycle_rejected"


class QuotaExceededError(TreeError):
    """Raised when a write would exceed the storage limit or max upload size."""

    kind = "quota_exceeded"


class PermissionDeniedError(TreeError):
    """Raised on cross-owner access, path traversal, or drive path collisions."""

    kind = "permission_denied"


class StorageIOError(TreeError):
    """Raised on transient storage failures (disk I/O, unreadable drive)."""

    kind = "io_error"


class InvariantViolationError(TreeError):
    """Raised when an operation would break a tree invariant."""

    kind = "invariant_violation"
