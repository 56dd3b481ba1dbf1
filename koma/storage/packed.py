"""
Single-file project bundle (.koma).

File format:
- MessagePack map: {"version": "1.0", "entries": {filename: bytes}}
- The whole bundle is rewritten (temp file + replace) each time a writer
  closes, so the file on disk is always a complete bundle

Suited to exporting and sharing a project as one file. Large projects are
better kept in a LocalDirectoryRoot since every write repacks the bundle.
"""
import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

import msgpack

from koma.constants import PACKED_EXTENSION, PACKED_VERSION
from koma.errors import MalformedManifest, NotFound
from koma.storage.base import FileHandle, PermissionState, StorageRoot, Writer, validate_filename

logger = logging.getLogger(__name__)


class PackedWriter(Writer):
    """Buffers content and commits it to the bundle on close."""

    def __init__(self, root: "PackedFileRoot", name: str):
        self._root = root
        self._name = name
        self._chunks: List[bytes] = []

    async def write(self, content: Union[str, bytes]):
        if isinstance(content, str):
            content = content.encode("utf-8")
        self._chunks.append(content)

    async def close(self):
        await self._root._commit(self._name, b"".join(self._chunks))

    async def abort(self):
        self._chunks.clear()


class PackedFileHandle(FileHandle):
    def __init__(self, root: "PackedFileRoot", name: str):
        super().__init__(name)
        self._root = root

    async def read_bytes(self) -> bytes:
        entries = await self._root._load()
        try:
            return entries[self.name]
        except KeyError as e:
            raise NotFound(self.name, self._root.name) from e

    async def open_writable(self) -> Writer:
        return PackedWriter(self._root, self.name)


class PackedFileRoot(StorageRoot):
    """
    Storage root stored as one MessagePack file.

    The bundle is read lazily on first access and cached in memory.
    """

    is_atomic = True

    def __init__(self, path: Union[str, Path]):
        path = Path(path)
        # Ensure .koma extension
        if path.suffix != PACKED_EXTENSION:
            path = path.with_suffix(PACKED_EXTENSION)
        self.path = path
        self.name = path.stem
        self._entries: Optional[Dict[str, bytes]] = None
        self._lock = asyncio.Lock()

    def _read_bundle(self) -> Dict[str, bytes]:
        if not self.path.exists():
            return {}

        with open(self.path, "rb") as f:
            packed_data = f.read()

        try:
            bundle = msgpack.unpackb(packed_data, raw=False)
        except (msgpack.exceptions.ExtraData, msgpack.exceptions.UnpackException, ValueError) as e:
            raise MalformedManifest(f"Invalid {PACKED_EXTENSION} file format: {e}") from e

        if not isinstance(bundle, dict) or not isinstance(bundle.get("entries"), dict):
            raise MalformedManifest(f"Invalid {PACKED_EXTENSION} bundle structure in {self.path}")

        # Validate version
        version = str(bundle.get("version", "unknown"))
        if version.split(".")[0] != PACKED_VERSION.split(".")[0]:
            raise MalformedManifest(
                f"Incompatible bundle version: {version}. Expected {PACKED_VERSION.split('.')[0]}.x")

        return dict(bundle["entries"])

    def _write_bundle(self, entries: Dict[str, bytes]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        packed_data = msgpack.packb({"version": PACKED_VERSION, "entries": entries}, use_bin_type=True)

        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(packed_data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise IOError(f"Failed to save bundle to {self.path}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    async def _load(self) -> Dict[str, bytes]:
        if self._entries is None:
            async with self._lock:
                if self._entries is None:
                    self._entries = await asyncio.to_thread(self._read_bundle)
        return self._entries

    async def _commit(self, name: str, data: bytes):
        await self._load()
        async with self._lock:
            self._entries[name] = data
            snapshot = dict(self._entries)
            await asyncio.to_thread(self._write_bundle, snapshot)
        logger.debug("Packed %s into %s (%d entries)", name, self.path, len(snapshot))

    async def get_file(self, name: str, create: bool = False) -> FileHandle:
        validate_filename(name)
        entries = await self._load()
        if not create and name not in entries:
            raise NotFound(name, self.name)
        return PackedFileHandle(self, name)

    async def keys(self) -> List[str]:
        return sorted(await self._load())

    async def remove_entry(self, name: str):
        await self._load()
        async with self._lock:
            if name not in self._entries:
                raise NotFound(name, self.name)
            del self._entries[name]
            await asyncio.to_thread(self._write_bundle, dict(self._entries))

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        target = self.path if self.path.exists() else self.path.parent
        flags = os.R_OK | os.W_OK if mode == "readwrite" else os.R_OK
        if not target.exists():
            return PermissionState.GRANTED
        granted = await asyncio.to_thread(os.access, target, flags)
        return PermissionState.GRANTED if granted else PermissionState.DENIED

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        return await self.query_permission(mode)
