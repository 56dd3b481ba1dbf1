"""
Project manifest I/O.

Flattening turns a Project into a JSON-serializable manifest by saving every
Blob through the BlobStore and replacing it with its filename. Unflattening
reads the manifest back and loads each filename into a Blob.

Filename scheme (frame zero-padded to 4 digits):
- shot image:     <name>_layer=<n>_<frame>.jpg
- live view:      <name>_layer=<n>_lv_<frame>.jpg
- raw:            <name>_layer=<n>_<frame>.dng
- backup shots:   same with backup=<i> in place of layer=<n>
- audio track:    audio.wav
- marker sounds:  marker_<percent-encoded name>.wav
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from koma.constants import (
    AUDIO_EXTENSION,
    AUDIO_FILENAME,
    DEFAULT_PROJECT_NAME,
    FRAME_DIGITS,
    IMAGE_EXTENSION,
    LIVEVIEW_SUFFIX,
    MANIFEST_NAME,
    MARKER_SOUND_PREFIX,
    RAW_EXTENSION,
)
from koma.errors import MalformedManifest
from koma.models import EMPTY_PROJECT, Blob, Koma, Project, Shot
from koma.storage.base import StorageRoot, read_file, validate_filename, write_file
from koma.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)


def query_string(query: Dict[str, Any]) -> str:
    """Format {'layer': 2} as 'layer=2', joining multiple pairs with '&'."""
    return "&".join(f"{key}={value}" for key, value in query.items())


def safe_basename(name: str) -> str:
    """Sanitize a project name for use as a filename prefix."""
    safe_name = "".join("_" if c in "/\\:" else c for c in name).strip()
    return safe_name or DEFAULT_PROJECT_NAME


def sequence_filename(basename: str, frame: int, extension: str) -> str:
    return f"{basename}_{frame:0{FRAME_DIGITS}d}.{extension}"


def marker_sound_filename(name: str) -> str:
    """Percent-encode the marker name so distinct names never share a file."""
    return f"{MARKER_SOUND_PREFIX}{quote(name, safe='')}.{AUDIO_EXTENSION}"


def merge_with_defaults(loaded: Dict[str, Any], default: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge a loaded manifest over the default one.

    Mappings are merged key by key. Any other value present in loaded wins,
    lists included: a loaded list replaces the default list wholesale and is
    never merged element-wise. Keys only in default are filled in.

    Args:
        loaded: Manifest read from storage
        default: Manifest of the current default template

    Returns:
        New merged dictionary (inputs are not modified)
    """
    merged: Dict[str, Any] = {}
    for key, default_value in default.items():
        if key not in loaded:
            merged[key] = _copy_json(default_value)
            continue
        value = loaded[key]
        if isinstance(value, dict) and isinstance(default_value, dict):
            merged[key] = merge_with_defaults(value, default_value)
        else:
            merged[key] = _copy_json(value)

    for key, value in loaded.items():
        if key not in default:
            merged[key] = _copy_json(value)

    return merged


def _copy_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy_json(v) for v in value]
    return value


# Keys written by the capture app before manifests used camelCase throughout
LEGACY_KEYS = {"ShootCondition": "shootCondition"}


def upgrade_legacy_keys(manifest: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return manifest with legacy top-level keys renamed.

    A current key wins over its legacy twin.
    """
    upgraded = dict(manifest)
    for legacy, current in LEGACY_KEYS.items():
        if legacy in upgraded:
            value = upgraded.pop(legacy)
            upgraded.setdefault(current, value)
    return upgraded


def default_manifest() -> Dict[str, Any]:
    """Manifest of the empty project template. Holds no filenames."""
    manifest = EMPTY_PROJECT.to_dict()
    manifest["komas"] = []
    manifest["timeline"]["markerSounds"] = {}
    return manifest


def _require(condition: bool, message: str):
    if not condition:
        raise MalformedManifest(message)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_filename(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        validate_filename(value)
    except ValueError:
        return False
    return True


def validate_manifest(manifest: Dict[str, Any]):
    """
    Check required fields of a merged manifest.

    Raises:
        MalformedManifest: On the first violation found
    """
    for key, default_value in default_manifest().items():
        if isinstance(default_value, dict):
            _require(isinstance(manifest.get(key), dict), f"{key} must be an object")

    capture = manifest["captureShot"]
    _require(_is_int(capture.get("frame")) and capture["frame"] >= 0,
             "captureShot.frame must be a non-negative integer")
    _require(_is_int(capture.get("layer")) and capture["layer"] >= 0,
             "captureShot.layer must be a non-negative integer")

    preview = manifest.get("previewRange")
    _require(isinstance(preview, list) and len(preview) == 2 and all(_is_int(v) for v in preview),
             "previewRange must be a pair of integers")
    _require(preview[0] <= preview[1], f"previewRange in point exceeds out point: {preview}")

    _require(isinstance(manifest.get("layers"), list), "layers must be a list")
    marker_sounds = manifest["timeline"].get("markerSounds")
    _require(isinstance(marker_sounds, dict), "timeline.markerSounds must be an object")
    for name, filename in marker_sounds.items():
        _require(_is_filename(filename), f"timeline.markerSounds[{name!r}] must be a filename")

    audio_src = manifest["audio"].get("src")
    _require(audio_src in (None, "") or _is_filename(audio_src), "audio.src must be a filename")

    komas = manifest.get("komas")
    _require(isinstance(komas, list), "komas must be a list")
    for frame, koma in enumerate(komas):
        _require(isinstance(koma, dict), f"komas[{frame}] must be an object")
        shots = koma.get("shots", [])
        _require(isinstance(shots, list), f"komas[{frame}].shots must be a list")
        backups = koma.get("backupShots")
        _require(backups is None or isinstance(backups, list),
                 f"komas[{frame}].backupShots must be a list")
        for kind, entries in (("shots", shots), ("backupShots", backups or [])):
            for index, shot in enumerate(entries):
                if shot is None and kind == "shots":
                    continue
                where = f"komas[{frame}].{kind}[{index}]"
                _require(isinstance(shot, dict), f"{where} must be an object or null")
                for key in ("lv", "jpg"):
                    _require(_is_filename(shot.get(key)), f"{where}.{key} must be a filename")
                raw = shot.get("raw")
                _require(raw is None or _is_filename(raw), f"{where}.raw must be a filename")


class Serializer:
    """Converts between Project trees and manifests stored under a root."""

    def __init__(self, blob_store: BlobStore, manifest_name: str = MANIFEST_NAME):
        self.blob_store = blob_store
        self.manifest_name = manifest_name

    # ------------------------------------------------------------------
    # Flatten

    async def flatten(self, project: Project, root: StorageRoot) -> Dict[str, Any]:
        """
        Save every blob of project under root and return the manifest.

        Komas and shots are saved concurrently; the manifest is assembled in
        index order so output does not depend on completion order.
        """
        name = safe_basename(project.name)
        manifest = project.to_dict()

        komas, marker_sounds, audio_src = await asyncio.gather(
            asyncio.gather(*(
                self._flatten_koma(name, koma, frame, root)
                for frame, koma in enumerate(project.komas)
            )),
            self._flatten_marker_sounds(project.timeline.marker_sounds, root),
            self._save_optional(root, AUDIO_FILENAME, project.audio.src),
        )

        manifest["komas"] = list(komas)
        manifest["timeline"]["markerSounds"] = marker_sounds
        if audio_src is not None:
            manifest["audio"]["src"] = audio_src
        return manifest

    async def _flatten_koma(self, name: str, koma: Koma, frame: int,
                            root: StorageRoot) -> Dict[str, Any]:
        data = koma.to_dict()

        async def save_slot(layer: int, shot: Optional[Shot]):
            if shot is None:
                return None
            return await self._flatten_shot(name, shot, frame, {"layer": layer}, root)

        data["shots"] = list(await asyncio.gather(
            *(save_slot(layer, shot) for layer, shot in enumerate(koma.shots))))

        if koma.backup_shots is not None:
            data["backupShots"] = list(await asyncio.gather(*(
                self._flatten_shot(name, shot, frame, {"backup": index}, root)
                for index, shot in enumerate(koma.backup_shots)
            )))
        return data

    async def _flatten_shot(self, name: str, shot: Shot, frame: int,
                            query: Dict[str, Any], root: StorageRoot) -> Dict[str, Any]:
        basename = "_".join([name, query_string(query)])
        data = shot.to_dict()

        lv, jpg, raw = await asyncio.gather(
            self.blob_store.save(root, sequence_filename(basename + LIVEVIEW_SUFFIX, frame, IMAGE_EXTENSION), shot.lv),
            self.blob_store.save(root, sequence_filename(basename, frame, IMAGE_EXTENSION), shot.jpg),
            self._save_optional(root, sequence_filename(basename, frame, RAW_EXTENSION), shot.raw),
        )
        data["lv"] = lv
        data["jpg"] = jpg
        if raw is not None:
            data["raw"] = raw
        return data

    async def _flatten_marker_sounds(self, sounds: Dict[str, Blob],
                                     root: StorageRoot) -> Dict[str, str]:
        names = sorted(sounds)
        filenames = await asyncio.gather(*(
            self.blob_store.save(root, marker_sound_filename(n), sounds[n]) for n in names))
        return dict(zip(names, filenames))

    async def _save_optional(self, root: StorageRoot, filename: str,
                             blob: Optional[Blob]) -> Optional[str]:
        if blob is None:
            return None
        return await self.blob_store.save(root, filename, blob)

    # ------------------------------------------------------------------
    # Unflatten

    async def unflatten(self, manifest: Dict[str, Any], root: StorageRoot) -> Project:
        """
        Load every filename of manifest from root and build the Project.

        Raises:
            NotFound: If a referenced file is missing
            MalformedManifest: If the manifest does not describe a valid project
        """
        timeline = manifest.get("timeline", {})
        audio = manifest.get("audio", {})

        komas, marker_sounds, audio_src = await asyncio.gather(
            asyncio.gather(*(self._unflatten_koma(k, root) for k in manifest.get("komas", []))),
            self._unflatten_marker_sounds(timeline.get("markerSounds", {}), root),
            self._open_optional(root, audio.get("src")),
        )

        try:
            return Project.from_dict(manifest, list(komas), marker_sounds, audio_src)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise MalformedManifest(f"Invalid project data: {e}") from e

    async def _unflatten_koma(self, data: Dict[str, Any], root: StorageRoot) -> Koma:
        async def open_slot(shot: Optional[Dict[str, Any]]) -> Optional[Shot]:
            if shot is None:
                return None
            return await self._unflatten_shot(shot, root)

        shots = list(await asyncio.gather(*(open_slot(s) for s in data.get("shots", []))))

        backup_shots = None
        if data.get("backupShots") is not None:
            backup_shots = list(await asyncio.gather(
                *(self._unflatten_shot(s, root) for s in data["backupShots"])))

        try:
            return Koma.from_dict(data, shots, backup_shots)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise MalformedManifest(f"Invalid koma data: {e}") from e

    async def _unflatten_shot(self, data: Dict[str, Any], root: StorageRoot) -> Shot:
        lv, jpg, raw = await asyncio.gather(
            self.blob_store.open(root, data["lv"]),
            self.blob_store.open(root, data["jpg"]),
            self._open_optional(root, data.get("raw")),
        )
        try:
            return Shot.from_dict(data, lv, jpg, raw)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise MalformedManifest(f"Invalid shot data: {e}") from e

    async def _unflatten_marker_sounds(self, sounds: Dict[str, str],
                                       root: StorageRoot) -> Dict[str, Blob]:
        names = list(sounds)
        blobs = await asyncio.gather(*(self.blob_store.open(root, sounds[n]) for n in names))
        return dict(zip(names, blobs))

    async def _open_optional(self, root: StorageRoot, filename: Optional[str]) -> Optional[Blob]:
        if not filename:
            return None
        return await self.blob_store.open(root, filename)

    # ------------------------------------------------------------------
    # Manifest file

    async def read_manifest(self, root: StorageRoot) -> Dict[str, Any]:
        """
        Read and parse the manifest file.

        Raises:
            NotFound: If the root has no manifest
            MalformedManifest: If it is not a JSON object
        """
        raw = await read_file(root, self.manifest_name)
        try:
            manifest = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedManifest(f"Failed to parse {self.manifest_name}: {e}") from e
        if not isinstance(manifest, dict):
            raise MalformedManifest(f"{self.manifest_name} must contain an object")
        return manifest

    async def write_manifest(self, root: StorageRoot, manifest: Dict[str, Any]):
        await write_file(root, self.manifest_name, json.dumps(manifest, ensure_ascii=False))

    async def has_manifest(self, root: StorageRoot) -> bool:
        return self.manifest_name in await root.keys()

    # ------------------------------------------------------------------
    # Whole project

    async def save(self, project: Project, root: StorageRoot):
        """Flatten project into root and write the manifest last."""
        start = time.perf_counter()
        manifest = await self.flatten(project, root)
        await self.write_manifest(root, manifest)
        logger.info("Saved '%s' to %r in %.1f ms (%d komas)",
                    project.name, root, (time.perf_counter() - start) * 1000, len(project.komas))

    async def load(self, root: StorageRoot) -> Project:
        """
        Read, merge, validate and unflatten the manifest of root.

        Nothing is returned unless every step succeeds.
        """
        start = time.perf_counter()
        loaded = await self.read_manifest(root)
        manifest = merge_with_defaults(upgrade_legacy_keys(loaded), default_manifest())
        validate_manifest(manifest)
        project = await self.unflatten(manifest, root)
        logger.info("Loaded '%s' from %r in %.1f ms (%d komas)",
                    project.name, root, (time.perf_counter() - start) * 1000, len(project.komas))
        return project

