"""Error taxonomy shared by the recorder components."""
from __future__ import annotations


class NvrError(Exception):
    """Base class for recorder errors carrying a CLI exit code."""

    exit_code: int = 1


class ValidationError(NvrError, ValueError):
    """Raised when an identifier, URI or configuration value is rejected."""

    exit_code = 1


class DuplicateIdError(ValidationError):
    """Raised when adding a camera whose identifier already exists."""


class InvalidURIError(ValidationError):
    """Raised when a stream URI does not use a supported scheme."""


class NotFoundError(NvrError, KeyError):
    """Raised when an operation targets an unknown camera."""

    exit_code = 2

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else "Not found"


class SessionTimeoutError(NvrError, TimeoutError):
    """Raised when a session does not reach the requested state in time.

    The registry already reflects the intended state, so retrying is safe.
    """

    exit_code = 3


class IngestionFailure(NvrError):
    """Transient failure reading from an upstream source."""


class RetentionIOError(NvrError, OSError):
    """Raised when a segment rename or unlink fails during retention."""


class StorageExhausted(NvrError):
    """Free-space floor cannot be met after all eligible deletions."""

    def __init__(self, free_bytes: int, floor_bytes: int) -> None:
        super().__init__(
            f"Free space {free_bytes} bytes is below the {floor_bytes} byte floor"
        )
        self.free_bytes = int(free_bytes)
        self.floor_bytes = int(floor_bytes)

    def to_dict(self) -> dict[str, object]:
        return {
            "alert": "storage_exhausted",
            "message": str(self),
            "free_bytes": self.free_bytes,
            "floor_bytes": self.floor_bytes,
        }


class StorageUnavailableError(NvrError):
    """Raised at startup when the recordings root cannot be used."""


__all__ = [
    "DuplicateIdError",
    "IngestionFailure",
    "InvalidURIError",
    "NotFoundError",
    "NvrError",
    "RetentionIOError",
    "SessionTimeoutError",
    "StorageExhausted",
    "StorageUnavailableError",
    "ValidationError",
]
