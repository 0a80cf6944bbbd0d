"""
Exceptions raised by the build.

Per-request API failures never surface as exceptions; the fetch workers
handle them in place. These cover the failures that end an invocation.
"""

from typing import Optional


class BuildError(Exception):
    """Base class for build errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Summary suitable for a handler result or a log record."""
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class TooManyRequestErrorsError(BuildError):
    """Raised when unexpected API failures reach the per-invocation ceiling."""

    def __init__(self, error_count: int, limit: int):
        super().__init__(
            code="too_many_request_errors",
            message=f"Got alarmingly many ({error_count}) unexpected errors querying API",
            details={"error_count": error_count, "limit": limit},
        )
        self.error_count = error_count
        self.limit = limit


class PublishError(BuildError):
    """Raised when the publish step fails."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="publish_failed", message=message, details=details)


class CheckpointCorruptError(BuildError):
    """Raised when a persisted checkpoint cannot be decoded."""

    def __init__(self, message: str):
        super().__init__(code="checkpoint_corrupt", message=message)


class ShardExistsError(BuildError):
    """Raised when a shard index is written twice."""

    def __init__(self, index: int):
        super().__init__(
            code="shard_exists",
            message=f"Shard {index} already exists",
            details={"index": index},
        )
        self.index = index


class DuplicateIdentifierError(BuildError):
    """Raised by a strict merge when a name appears in more than one shard."""

    def __init__(self, names: list[str]):
        super().__init__(
            code="duplicate_identifier",
            message=f"{len(names)} package(s) counted in more than one shard",
            details={"names": names[:20]},
        )
        self.names = names


class NameSourceError(BuildError):
    """Raised when the package name list cannot be obtained."""

    def __init__(self, message: str):
        super().__init__(code="name_source_failed", message=message)
