"""
Error types raised by the persistence engine.

Storage errors propagate to the operation boundary (open, save, save_as)
unchanged in kind. Nothing here is retried automatically.
"""
from typing import Optional


class KomaError(Exception):
    """Base class for all persistence engine errors."""


class NoStorageContext(KomaError):
    """Raised when an operation needs a storage root and none is set."""

    def __init__(self, operation: str = "operation"):
        super().__init__(f"No storage root available for {operation}")
        self.operation = operation


class PermissionDenied(KomaError, PermissionError):
    """Raised when read/write access to a storage root is declined."""

    def __init__(self, root_name: str, mode: str = "readwrite"):
        super().__init__(f"Permission denied ({mode}) for storage root '{root_name}'")
        self.root_name = root_name
        self.mode = mode


class NotFound(KomaError, FileNotFoundError):
    """Raised when a named entry does not exist under a storage root."""

    def __init__(self, filename: str, root_name: Optional[str] = None):
        where = f" in '{root_name}'" if root_name else ""
        super().__init__(f"File not found{where}: {filename}")
        self.filename = filename
        self.root_name = root_name


class MalformedManifest(KomaError, ValueError):
    """Raised when a manifest cannot be parsed or fails validation."""
