"""
Storage backend contract.

A storage root is a directory-like handle holding named files. Every call that
touches the backend is a coroutine, since reads, writes and permission prompts
are the points where other work may interleave.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Union

from koma.errors import PermissionDenied


class PermissionState(str, Enum):
    """Result of a permission query or request."""
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"


class Writer(ABC):
    """
    Scoped writer for a single file.

    Use as an async context manager: the writer is closed when the block
    exits normally and aborted (content discarded) when it raises.
    """

    @abstractmethod
    async def write(self, content: Union[str, bytes]):
        """Append content. Text is encoded as UTF-8."""
        raise NotImplementedError()

    @abstractmethod
    async def close(self):
        """Commit written content. Only then is the write durable."""
        raise NotImplementedError()

    @abstractmethod
    async def abort(self):
        """Release the writer without committing."""
        raise NotImplementedError()

    async def __aenter__(self) -> "Writer":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.close()
        else:
            await self.abort()
        return False


class FileHandle(ABC):
    """Handle to one named file under a storage root."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def read_bytes(self) -> bytes:
        """
        Read full file contents.

        Raises:
            NotFound: If the file does not exist
        """
        raise NotImplementedError()

    async def read_text(self, encoding: str = "utf-8") -> str:
        data = await self.read_bytes()
        return data.decode(encoding)

    @abstractmethod
    async def open_writable(self) -> Writer:
        """Open a writer that replaces the file's full contents on close."""
        raise NotImplementedError()


class StorageRoot(ABC):
    """
    Directory-like storage location for a project.

    Attributes:
        name: Display name (directory name). Empty for scratch roots.
        is_atomic: True if readers never observe a partially written file
    """

    name: str = ""
    is_atomic: bool = True

    @abstractmethod
    async def get_file(self, name: str, create: bool = False) -> FileHandle:
        """
        Get a handle to a named file.

        Args:
            name: Filename (no path separators)
            create: Return a handle even if the file does not exist yet

        Raises:
            NotFound: If the file is missing and create is False
        """
        raise NotImplementedError()

    @abstractmethod
    async def keys(self) -> List[str]:
        """List entry names under this root."""
        raise NotImplementedError()

    @abstractmethod
    async def remove_entry(self, name: str):
        """
        Delete a named entry.

        Raises:
            NotFound: If the entry does not exist
        """
        raise NotImplementedError()

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        return PermissionState.GRANTED

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        return PermissionState.GRANTED

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


def validate_filename(name: str) -> str:
    """Reject names that would escape the root."""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"Invalid filename: {name!r}")
    return name


async def ensure_permission(root: StorageRoot, mode: str = "readwrite"):
    """
    Query permission for a root and request it once if not granted.

    Raises:
        PermissionDenied: If the request is denied
    """
    state = await root.query_permission(mode)
    if state != PermissionState.GRANTED:
        state = await root.request_permission(mode)
        if state == PermissionState.DENIED:
            raise PermissionDenied(root.name, mode)


async def read_file(root: StorageRoot, name: str) -> bytes:
    handle = await root.get_file(name)
    return await handle.read_bytes()


async def write_file(root: StorageRoot, name: str, content: Union[str, bytes]):
    """Create or overwrite a named file through a scoped writer."""
    handle = await root.get_file(name, create=True)
    async with await handle.open_writable() as writer:
        await writer.write(content)
