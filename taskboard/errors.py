"""
Error kinds raised by the board engine.

Every interface (HTTP, CLI, agent tools) re-renders these into its own
shape, but `kind` and `message` survive unchanged so callers and tests can
inspect them end-to-end.
"""
from typing import Any, Dict, List, Optional


class TaskboardError(Exception):
    """Base class for all engine errors."""

    kind = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(TaskboardError):
    """Raised when a record or request violates a structural rule."""

    kind = "VALIDATION_ERROR"

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.issues = list(issues) if issues else [message]

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["issues"] = self.issues
        return data


class PositionError(ValidationError):
    """Raised when a position target cannot be resolved."""
    pass


class NotFoundError(TaskboardError):
    """Raised when a board, archive, card or column identifier does not resolve."""

    kind = "NOT_FOUND"

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class DependencyError(TaskboardError):
    """Raised for dangling or self-referential card dependencies."""

    kind = "DEPENDENCY_ERROR"

    def __init__(self, message: str, dependency_id: Optional[str] = None):
        super().__init__(message)
        self.dependency_id = dependency_id


class FormatMismatchError(TaskboardError):
    """Raised when a card-level operation targets a legacy (nested) board."""

    kind = "FORMAT_MISMATCH"

    def __init__(self, board_id: str):
        super().__init__(
            f"Board {board_id} uses the legacy nested layout; "
            f"card operations require the card-first layout"
        )
        self.board_id = board_id


class RateLimitError(TaskboardError):
    """Raised when a client exceeds its admission budget."""

    kind = "RATE_LIMITED"

    def __init__(self, message: str, limit: int = 0, remaining: int = 0, retry_after_ms: int = 0):
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_secs(self) -> int:
        """Whole seconds to wait, never less than one."""
        return max(1, -(-self.retry_after_ms // 1000))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "limit": self.limit,
            "remaining": self.remaining,
            "retryAfterMs": self.retry_after_ms,
        })
        return data


class ServerBusyError(RateLimitError):
    """Raised when the limiter is already tracking its maximum number of clients."""

    kind = "SERVER_BUSY"


class PersistenceError(TaskboardError):
    """Raised on I/O failure reading or writing the board store."""

    kind = "PERSISTENCE_ERROR"
