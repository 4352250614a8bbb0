"""Platform abstraction layer."""

from .files import (
    atomic_write_text,
    create_exclusive,
    file_age_seconds,
    remove_if_owned,
    sha256_file,
    take_over_stale,
)
from .process import ProcessError, run

__all__ = [
    # files
    "atomic_write_text",
    "create_exclusive",
    "file_age_seconds",
    "remove_if_owned",
    "sha256_file",
    "take_over_stale",
    # process
    "ProcessError",
    "run",
]
