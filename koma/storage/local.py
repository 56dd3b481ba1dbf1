"""
Local filesystem storage root.

Each project root is a directory. Writes go to a temporary file in the same
directory which replaces the target on close, so a reader sees either the old
or the new contents and never a truncated file.
"""
import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from koma.errors import NotFound
from koma.storage.base import FileHandle, PermissionState, StorageRoot, Writer, validate_filename

logger = logging.getLogger(__name__)

_TEMP_SUFFIX = ".tmp"


class LocalWriter(Writer):
    """Writer backed by a temporary sibling file."""

    def __init__(self, path: Path):
        self._path = path
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=_TEMP_SUFFIX)
        self._tmp_path = Path(tmp)
        self._file = os.fdopen(fd, "wb")

    async def write(self, content: Union[str, bytes]):
        if isinstance(content, str):
            content = content.encode("utf-8")
        await asyncio.to_thread(self._file.write, content)

    def _commit(self):
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()
            os.replace(self._tmp_path, self._path)
        finally:
            if not self._file.closed:
                self._file.close()
            if self._tmp_path.exists():
                self._tmp_path.unlink()

    def _discard(self):
        self._file.close()
        if self._tmp_path.exists():
            self._tmp_path.unlink()

    async def close(self):
        try:
            await asyncio.to_thread(self._commit)
        except OSError as e:
            raise IOError(f"Failed to write {self._path}: {e}") from e

    async def abort(self):
        await asyncio.to_thread(self._discard)


class LocalFileHandle(FileHandle):
    """Handle to a file inside a LocalDirectoryRoot."""

    def __init__(self, root: "LocalDirectoryRoot", name: str):
        super().__init__(name)
        self._root = root
        self._path = root.path / name

    async def read_bytes(self) -> bytes:
        try:
            return await asyncio.to_thread(self._path.read_bytes)
        except FileNotFoundError as e:
            raise NotFound(self.name, self._root.name) from e

    async def open_writable(self) -> Writer:
        return await asyncio.to_thread(LocalWriter, self._path)


class LocalDirectoryRoot(StorageRoot):
    """
    Project root backed by a directory on disk.

    The directory is created on first use.
    """

    is_atomic = True

    def __init__(self, path: Union[str, Path], name: Optional[str] = None):
        """
        Args:
            path: Directory path
            name: Display name (defaults to the directory name). Pass ""
                  for a scratch root.
        """
        self.path = Path(path).expanduser()
        self.name = self.path.name if name is None else name
        self.path.mkdir(parents=True, exist_ok=True)

    async def get_file(self, name: str, create: bool = False) -> FileHandle:
        validate_filename(name)
        handle = LocalFileHandle(self, name)
        if not create and not await asyncio.to_thread((self.path / name).is_file):
            raise NotFound(name, self.name)
        return handle

    def _list(self) -> List[str]:
        return sorted(
            p.name for p in self.path.iterdir()
            if p.is_file() and not (p.name.startswith(".") and p.name.endswith(_TEMP_SUFFIX))
        )

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._list)

    async def remove_entry(self, name: str):
        validate_filename(name)
        try:
            await asyncio.to_thread((self.path / name).unlink)
        except FileNotFoundError as e:
            raise NotFound(name, self.name) from e

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        flags = os.R_OK | os.W_OK if mode == "readwrite" else os.R_OK
        granted = await asyncio.to_thread(os.access, self.path, flags)
        return PermissionState.GRANTED if granted else PermissionState.DENIED

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        # The OS has no consent prompt; the answer is the same as the query.
        return await self.query_permission(mode)
