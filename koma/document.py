"""
Document store: the live project tree and every way of changing it.

Owns the project, its storage root, undo history and save coordination.
Mutations go through the methods below, each of which marks the document
dirty explicitly (scheduling an auto-save) and, for content changes, records
an undo snapshot. Code that edits `project` directly must call touch().
"""
import logging
from typing import Awaitable, Callable, List, Optional

from koma.config import Settings, load_settings
from koma.constants import DEFAULT_PROJECT_NAME
from koma.coordinator import AutoSave, Coalescer, SingleFlight
from koma.errors import NoStorageContext
from koma.history import HistoryManager, Snapshot
from koma.logging_utils import setup_logging
from koma.models import Blob, CaptureShot, Koma, LayerSettings, Project, Shot, new_project
from koma.serializer import Serializer
from koma.storage.base import StorageRoot, ensure_permission
from koma.storage.blob_store import BlobStore
from koma.storage.local import LocalDirectoryRoot

logger = logging.getLogger(__name__)

# Async callable asking the user for a storage root
RootPicker = Callable[[], Awaitable[StorageRoot]]


class DocumentStore:
    """
    Canonical mutable project plus its persistence.

    Attributes:
        scratch_root: Disposable root used when the project has not been
                      saved anywhere else
        history: Undo/redo log over capture_shot and komas
        autosave: Change notifications -> coalesced saves
    """

    def __init__(self, scratch_root: Optional[StorageRoot] = None,
                 picker: Optional[RootPicker] = None,
                 settings: Optional[Settings] = None,
                 blob_store: Optional[BlobStore] = None):
        """
        Args:
            scratch_root: Root for unsaved sessions (cleared on create_new)
            picker: Prompts for a root when open/save_as get none
            settings: Engine settings (defaults if None)
            blob_store: Shared blob store (a new one if None)
        """
        self.settings = settings or Settings()
        self.blob_store = blob_store or BlobStore()
        self.serializer = Serializer(self.blob_store, self.settings.manifest_name)
        self.scratch_root = scratch_root
        self._picker = picker
        self._root: Optional[StorageRoot] = None
        self._project = new_project()

        self.history = HistoryManager(self._read_undoable, self._write_undoable,
                                      capacity=self.settings.history_capacity)
        self._save = Coalescer(self._save_now)
        self._open = SingleFlight(self._open_now)
        self.autosave = AutoSave(self.save, enabled=self.settings.autosave)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      picker: Optional[RootPicker] = None) -> "DocumentStore":
        """
        Build a store for an application session.

        Configures logging at settings.log_level and keeps unsaved work in a
        local scratch directory at settings.scratch_dir.

        Args:
            settings: Engine settings (loaded from the settings file if None)
            picker: Prompts for a root when open/save_as get none
        """
        settings = settings or load_settings()
        setup_logging(settings.log_level)
        scratch_root = LocalDirectoryRoot(settings.scratch_dir, name="")
        logger.debug("Scratch directory: %s", scratch_root.path)
        return cls(scratch_root=scratch_root, picker=picker, settings=settings)

    # ------------------------------------------------------------------
    # Read access

    @property
    def project(self) -> Project:
        return self._project

    @property
    def root(self) -> Optional[StorageRoot]:
        return self._root

    @property
    def all_komas(self) -> List[Koma]:
        return self._project.all_komas

    @property
    def is_saved_to_disk(self) -> bool:
        """True once the project lives in a root other than the scratch root."""
        return self._root is not None and self._root is not self.scratch_root

    @property
    def is_opening(self) -> bool:
        return self._open.is_executing

    @property
    def is_saving(self) -> bool:
        return self._save.is_executing

    # ------------------------------------------------------------------
    # Change tracking

    def _read_undoable(self) -> Snapshot:
        return Snapshot(capture_shot=self._project.capture_shot, komas=self._project.komas)

    def _write_undoable(self, snapshot: Snapshot):
        self._project.capture_shot = snapshot.capture_shot
        self._project.komas = snapshot.komas
        self._changed()

    def _changed(self, undoable: bool = False):
        if undoable:
            self.history.commit()
        self.autosave.notify()

    def touch(self, undoable: bool = False):
        """
        Mark the document changed after editing `project` directly.

        Args:
            undoable: The edit touched capture_shot or komas
        """
        self._changed(undoable)

    def undo(self) -> bool:
        return self.history.undo()

    def redo(self) -> bool:
        return self.history.redo()

    # ------------------------------------------------------------------
    # Open and save

    async def _pick_root(self, operation: str) -> StorageRoot:
        if self._picker is None:
            raise NoStorageContext(operation)
        return await self._picker()

    def _replace(self, project: Project, root: Optional[StorageRoot]):
        with self.autosave.paused():
            self._project = project
            self._root = root
            self.history.clear()

    async def create_new(self):
        """
        Reset to an empty project.

        The scratch root becomes the project's home and is emptied. Saves
        already running finish first so none of them writes the old project
        back into the emptied root.
        """
        previous = self._root
        with self.autosave.paused():
            await self.autosave.drain()
            await self._save.wait_idle()
            self._replace(new_project(), self.scratch_root)

            root = self.scratch_root
            if root is not None:
                for key in await root.keys():
                    await root.remove_entry(key)
                self.blob_store.invalidate(root)

        logger.info("Created new project (previous root: %r)", previous)

    async def open(self, root: Optional[StorageRoot] = None) -> Optional[bool]:
        """
        Load the project stored under root, prompting for one if None.

        Ignored (returns None) while another open is in flight. On failure
        the current project and root are left untouched.

        Raises:
            NoStorageContext: No root given and no picker configured
            PermissionDenied: Access to the root was declined
            NotFound: The manifest or a referenced asset is missing
            MalformedManifest: The manifest is invalid
        """
        return await self._open(root)

    async def _open_now(self, root: Optional[StorageRoot]) -> bool:
        if root is None:
            root = await self._pick_root("open")
        await ensure_permission(root)

        project = await self.serializer.load(root)
        self._replace(project, root)
        logger.info("Opened '%s' from %r", project.name, root)
        return True

    async def restore(self) -> bool:
        """Reopen the scratch session, if the scratch root holds one."""
        root = self.scratch_root
        if root is None:
            return False
        if not await self.serializer.has_manifest(root):
            self._root = root
            return False
        return bool(await self.open(root))

    async def save(self):
        """
        Save to the current root (or the scratch root).

        Calls made while a save runs coalesce into one trailing save.

        Raises:
            NoStorageContext: Neither a current nor a scratch root exists
        """
        await self._save()

    async def _save_now(self):
        root = self._root or self.scratch_root
        if root is None:
            raise NoStorageContext("save")
        self._root = root

        # Flatten a copy so edits made while blobs are written do not tear the manifest
        snapshot = self._project.clone()
        await self.serializer.save(snapshot, root)

    async def save_as(self, root: Optional[StorageRoot] = None):
        """
        Save to a new root, prompting for one if None.

        An untitled project takes the root's name.
        """
        if root is None:
            root = await self._pick_root("save as")
        await ensure_permission(root)

        self._root = root
        if self._project.name == DEFAULT_PROJECT_NAME and root.name:
            self._project.name = root.name

        await self.save()

    async def save_in_scratch(self):
        """Move the project back to the scratch root and save it there."""
        if self.scratch_root is None:
            raise NoStorageContext("save in scratch")
        self._root = self.scratch_root
        await self.save()

    async def flush(self):
        """
        Finish pending auto-saves.

        Raises:
            Exception: The first auto-save failure since the last flush
        """
        await self.autosave.flush()
        await self.autosave.wait()

    # ------------------------------------------------------------------
    # Mutations

    def get_shot(self, frame: int, layer: int) -> Optional[Shot]:
        """Shot at (frame, layer), or None if the slot is empty or out of range."""
        if frame < 0 or layer < 0 or frame >= len(self._project.komas):
            return None
        shots = self._project.komas[frame].shots
        return shots[layer] if layer < len(shots) else None

    def _grow_komas(self, frame: int) -> Koma:
        komas = self._project.komas
        while frame >= len(komas):
            komas.append(Koma())
        return komas[frame]

    def set_shot(self, frame: int, layer: int, shot: Optional[Shot]):
        """
        Store shot at (frame, layer), growing komas and slots as needed.

        Args:
            frame: Frame index (>= 0)
            layer: Layer index (>= 0)
            shot: Shot to store, or None to empty the slot
        """
        if frame < 0 or layer < 0:
            raise IndexError(f"Frame and layer must be non-negative, got ({frame}, {layer})")

        koma = self._grow_komas(frame)
        while layer >= len(koma.shots):
            koma.shots.append(None)
        koma.shots[layer] = shot

        self._changed(undoable=True)

    def add_backup_shot(self, frame: int, shot: Shot):
        """Keep a previous take of frame."""
        if frame < 0:
            raise IndexError(f"Frame must be non-negative, got {frame}")

        koma = self._grow_komas(frame)
        if koma.backup_shots is None:
            koma.backup_shots = []
        koma.backup_shots.append(shot)

        self._changed(undoable=True)

    def get_layer_count(self, frame: int) -> int:
        if frame < 0 or frame >= len(self._project.komas):
            return 0
        return len(self._project.komas[frame].shots)

    def get_layer_settings(self, layer: int) -> LayerSettings:
        """Settings of layer, adding default layers up to it if missing."""
        if layer < 0:
            raise IndexError(f"Layer must be non-negative, got {layer}")

        layers = self._project.layers
        grew = layer >= len(layers)
        while layer >= len(layers):
            layers.append(LayerSettings())
        if grew:
            self._changed()
        return layers[layer]

    def set_layer_settings(self, layer: int, opacity: Optional[float] = None,
                           mix_blend_mode: Optional[str] = None):
        settings = self.get_layer_settings(layer)
        updated = LayerSettings(
            opacity=settings.opacity if opacity is None else opacity,
            mix_blend_mode=settings.mix_blend_mode if mix_blend_mode is None else mix_blend_mode,
        )
        self._project.layers[layer] = updated
        self._changed()

    def set_duration(self, frames: int):
        """Grow komas so that index `frames` exists. Never shrinks."""
        if frames >= len(self._project.komas):
            self._grow_komas(frames)
            self._changed(undoable=True)

    def set_in_point(self, value: int):
        """Set preview in point, clamped to [0, out point]."""
        out_point = self._project.preview_range[1]
        in_point = max(0, min(value, out_point))
        self._project.preview_range = (in_point, out_point)
        self._changed()

    def set_out_point(self, value: int):
        """Set preview out point, clamped to [in point, last frame of all_komas]."""
        in_point = self._project.preview_range[0]
        last_frame = len(self.all_komas) - 1
        out_point = max(in_point, min(value, last_frame))
        self._project.preview_range = (in_point, out_point)
        self._changed()

    def set_capture_shot(self, frame: int, layer: int = 0):
        self._project.capture_shot = CaptureShot(frame=frame, layer=layer)
        self._changed(undoable=True)

    def set_audio(self, src: Optional[Blob], start_frame: int = 0):
        self._project.audio.src = src
        self._project.audio.start_frame = start_frame
        self._changed()

    def set_marker_sound(self, name: str, sound: Optional[Blob]):
        """Add or replace a marker sound; None removes it."""
        sounds = self._project.timeline.marker_sounds
        if sound is None:
            sounds.pop(name, None)
        else:
            sounds[name] = sound
        self._changed()

    def rename(self, name: str):
        self._project.name = name
        self._changed()

    def set_fps(self, fps: int):
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        self._project.fps = fps
        self._changed()

    def set_onionskin(self, offset: int):
        self._project.onionskin = offset
        self._changed()
