"""
Blob store: binary assets addressed by filename under a storage root.

Writes are memoized per root by blob identity. Saving the same Blob instance
under the same filename twice performs one write. Blobs with identical bytes
but different identities are written every time; this is not a
content-addressed store.

The memo is only an optimization. Dropping it costs redundant writes, never
correctness.
"""
import logging
import mimetypes
import weakref
from typing import Dict, Optional

from koma.models import Blob
from koma.storage.base import StorageRoot

logger = logging.getLogger(__name__)

# mimetypes has no entry for raw camera files on most platforms
mimetypes.add_type("image/x-adobe-dng", ".dng")


def guess_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


class BlobStore:
    """Reads and writes Blobs, skipping writes already done for a root."""

    def __init__(self):
        # root -> {filename: token of the blob last written/read there}
        self._written: "weakref.WeakKeyDictionary[StorageRoot, Dict[str, str]]" = weakref.WeakKeyDictionary()
        self._warned: "weakref.WeakSet[StorageRoot]" = weakref.WeakSet()
        self.write_count = 0

    def _memo(self, root: StorageRoot) -> Dict[str, str]:
        memo = self._written.get(root)
        if memo is None:
            memo = {}
            self._written[root] = memo
        return memo

    def is_written(self, root: StorageRoot, filename: str, blob: Blob) -> bool:
        """Check if this exact blob is known to be stored at filename."""
        return self._memo(root).get(filename) == blob.token

    async def save(self, root: StorageRoot, filename: str, blob: Blob) -> str:
        """
        Persist a blob under filename.

        Args:
            root: Storage root
            filename: Target filename
            blob: Binary asset

        Returns:
            The filename, for substitution into a manifest

        Raises:
            PermissionDenied, IOError: Propagated from the backend
        """
        if self.is_written(root, filename, blob):
            logger.debug("Skip %s (unchanged)", filename)
            return filename

        if not root.is_atomic and root not in self._warned:
            self._warned.add(root)
            logger.warning(
                "Storage root %r only supports plain overwrite; an interrupted "
                "save may leave partially written files (best effort)", root)

        handle = await root.get_file(filename, create=True)
        async with await handle.open_writable() as writer:
            await writer.write(blob.data)

        self.write_count += 1
        self._memo(root)[filename] = blob.token
        return filename

    async def open(self, root: StorageRoot, filename: str, mime_type: Optional[str] = None) -> Blob:
        """
        Load a blob from filename.

        The loaded blob is recorded as stored at filename, so saving it
        back unchanged costs no I/O.

        Raises:
            NotFound: If filename does not exist under root
        """
        handle = await root.get_file(filename)
        data = await handle.read_bytes()
        blob = Blob(data, mime_type or guess_mime_type(filename))
        self._memo(root)[filename] = blob.token
        return blob

    def invalidate(self, root: Optional[StorageRoot] = None):
        """Forget memoized writes for one root, or all roots."""
        if root is None:
            self._written.clear()
        else:
            self._written.pop(root, None)
