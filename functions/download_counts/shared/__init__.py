# Shared utilities package
from .config import BuildConfig
from .errors import (
    BuildError,
    CheckpointCorruptError,
    DuplicateIdentifierError,
    NameSourceError,
    PublishError,
    ShardExistsError,
    TooManyRequestErrorsError,
)

__all__ = [
    "BuildConfig",
    "BuildError",
    "CheckpointCorruptError",
    "DuplicateIdentifierError",
    "NameSourceError",
    "PublishError",
    "ShardExistsError",
    "TooManyRequestErrorsError",
]
