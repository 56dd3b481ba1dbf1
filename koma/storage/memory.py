"""
In-memory storage root.

Used as the scratch root for unsaved sessions and as the backend in tests.
Counts committed writes per file so callers can observe redundant I/O.
"""
import asyncio
from collections import Counter
from typing import Dict, List, Optional, Union

from koma.errors import NotFound
from koma.storage.base import FileHandle, PermissionState, StorageRoot, Writer, validate_filename


class MemoryWriter(Writer):
    """
    Writer for a MemoryRoot entry.

    Atomic roots commit buffered content on close. Non-atomic roots truncate
    on open and write straight through, like a plain overwrite.
    """

    def __init__(self, root: "MemoryRoot", name: str):
        self._root = root
        self._name = name
        self._chunks: List[bytes] = []
        if not root.is_atomic:
            root.entries[name] = b""

    async def write(self, content: Union[str, bytes]):
        if isinstance(content, str):
            content = content.encode("utf-8")
        await asyncio.sleep(0)
        if self._root.is_atomic:
            self._chunks.append(content)
        else:
            self._root.entries[self._name] += content

    async def close(self):
        await asyncio.sleep(0)
        if self._root.is_atomic:
            self._root.entries[self._name] = b"".join(self._chunks)
        self._root.write_counts[self._name] += 1

    async def abort(self):
        self._chunks.clear()


class MemoryFileHandle(FileHandle):
    def __init__(self, root: "MemoryRoot", name: str):
        super().__init__(name)
        self._root = root

    async def read_bytes(self) -> bytes:
        await asyncio.sleep(0)
        try:
            return self._root.entries[self.name]
        except KeyError as e:
            raise NotFound(self.name, self._root.name) from e

    async def open_writable(self) -> Writer:
        return MemoryWriter(self._root, self.name)


class MemoryRoot(StorageRoot):
    """
    Storage root holding entries in a dict.

    Attributes:
        entries: Filename -> committed bytes
        write_counts: Filename -> number of committed writes
        permission: State returned by query_permission
        request_result: State returned by request_permission
    """

    def __init__(self, name: str = "", is_atomic: bool = True,
                 permission: PermissionState = PermissionState.GRANTED,
                 request_result: Optional[PermissionState] = None):
        self.name = name
        self.is_atomic = is_atomic
        self.entries: Dict[str, bytes] = {}
        self.write_counts: Counter = Counter()
        self.permission = permission
        self.request_result = request_result if request_result is not None else permission
        self.permission_requests = 0

    @property
    def total_writes(self) -> int:
        return sum(self.write_counts.values())

    async def get_file(self, name: str, create: bool = False) -> FileHandle:
        validate_filename(name)
        await asyncio.sleep(0)
        if not create and name not in self.entries:
            raise NotFound(name, self.name)
        return MemoryFileHandle(self, name)

    async def keys(self) -> List[str]:
        return sorted(self.entries)

    async def remove_entry(self, name: str):
        try:
            del self.entries[name]
        except KeyError as e:
            raise NotFound(name, self.name) from e

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        return self.permission

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        self.permission_requests += 1
        self.permission = self.request_result
        return self.request_result
