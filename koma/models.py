"""
Mutable data models for a Koma project.

The project tree is edited in place during a session, so unlike the binary
assets it holds, the containers here are plain (non-frozen) dataclasses:
- Blob: immutable binary asset with an identity token
- Shot / Koma / Marker: frame content
- Project: root aggregate

Binary leaves (Blob) are not part of to_dict(). The serializer swaps them for
filenames on save and passes the loaded blobs back into from_dict() on open.
"""
import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from koma.constants import (
    DEFAULT_CAMERA_CONFIGS,
    DEFAULT_FPS,
    DEFAULT_OVERLAY,
    DEFAULT_PROJECT_NAME,
    DEFAULT_RESOLUTION,
    DEFAULT_SHOOT_CONDITION,
    DEFAULT_VISIBLE_PROPERTIES,
    IDENTITY_TRANSFORM,
    MIX_BLEND_MODES,
)


def _new_token() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Blob:
    """
    Immutable binary asset (image, raw file, audio).

    Attributes:
        data: Raw bytes
        mime_type: Content type of the bytes (informational, not compared)
        token: Identity issued at creation, used to memoize writes.
               Two blobs with equal bytes still have different tokens.
    """
    data: bytes
    mime_type: str = field(default="application/octet-stream", compare=False)
    token: str = field(default_factory=_new_token, compare=False, repr=False)

    def __post_init__(self):
        """Normalize data to bytes."""
        if isinstance(self.data, (bytearray, memoryview)):
            object.__setattr__(self, "data", bytes(self.data))
        elif not isinstance(self.data, bytes):
            raise TypeError(f"Blob data must be bytes, got {type(self.data).__name__}")

    @property
    def size(self) -> int:
        return len(self.data)

    # Blobs are immutable: clones of a tree share them and keep their identity
    def __copy__(self) -> "Blob":
        return self

    def __deepcopy__(self, memo) -> "Blob":
        return self

    def __repr__(self) -> str:
        return f"Blob({self.size} bytes, {self.mime_type})"


@dataclass
class Tracker:
    """
    Spatial tracker pose.

    Attributes:
        position: (x, y, z)
        rotation: Quaternion (x, y, z, w)
    """
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rotation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

    def __post_init__(self):
        """Validate vector sizes."""
        self.position = tuple(self.position)
        self.rotation = tuple(self.rotation)
        if len(self.position) != 3:
            raise ValueError(f"Tracker position must have 3 components, got {len(self.position)}")
        if len(self.rotation) != 4:
            raise ValueError(f"Tracker rotation must have 4 components, got {len(self.rotation)}")

    def to_dict(self) -> Dict[str, Any]:
        return {"position": list(self.position), "rotation": list(self.rotation)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tracker":
        return cls(
            position=tuple(data.get("position", (0.0, 0.0, 0.0))),
            rotation=tuple(data.get("rotation", (0.0, 0.0, 0.0, 1.0))),
        )


@dataclass
class Shot:
    """
    One captured image set occupying a layer slot of a Koma.

    Attributes:
        lv: Live-view preview image
        jpg: Full-resolution image
        camera_configs: Camera configuration at capture time
        raw: Optional raw image
        tracker: Optional tracker pose at capture time
        dmx: Optional lighting values at capture time
        shoot_time: Exposure duration in milliseconds
        capture_date: Capture timestamp (ms since epoch)
    """
    lv: Blob
    jpg: Blob
    camera_configs: Dict[str, Any] = field(default_factory=dict)
    raw: Optional[Blob] = None
    tracker: Optional[Tracker] = None
    dmx: Optional[List[float]] = None
    shoot_time: Optional[float] = None
    capture_date: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert metadata to dictionary. Binary fields are left to the serializer."""
        result: Dict[str, Any] = {"cameraConfigs": dict(self.camera_configs)}
        if self.tracker is not None:
            result["tracker"] = self.tracker.to_dict()
        if self.dmx is not None:
            result["dmx"] = list(self.dmx)
        if self.shoot_time is not None:
            result["shootTime"] = self.shoot_time
        if self.capture_date is not None:
            result["captureDate"] = self.capture_date
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], lv: Blob, jpg: Blob,
                  raw: Optional[Blob] = None) -> "Shot":
        """Create Shot from dictionary and its already loaded blobs."""
        tracker = None
        if data.get("tracker"):
            tracker = Tracker.from_dict(data["tracker"])

        dmx = data.get("dmx")

        return cls(
            lv=lv,
            jpg=jpg,
            raw=raw,
            camera_configs=dict(data.get("cameraConfigs", {})),
            tracker=tracker,
            dmx=list(dmx) if dmx is not None else None,
            shoot_time=data.get("shootTime"),
            capture_date=data.get("captureDate"),
        )


@dataclass
class KomaTarget:
    """Per-frame target metadata used when shooting (camera, pose, lighting)."""
    camera_configs: Optional[Dict[str, Any]] = None
    tracker: Optional[Tracker] = None
    dmx: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.camera_configs is not None:
            result["cameraConfigs"] = dict(self.camera_configs)
        if self.tracker is not None:
            result["tracker"] = self.tracker.to_dict()
        if self.dmx is not None:
            result["dmx"] = list(self.dmx)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KomaTarget":
        tracker = Tracker.from_dict(data["tracker"]) if data.get("tracker") else None
        dmx = data.get("dmx")
        camera_configs = data.get("cameraConfigs")
        return cls(
            camera_configs=dict(camera_configs) if camera_configs is not None else None,
            tracker=tracker,
            dmx=list(dmx) if dmx is not None else None,
        )


@dataclass
class Marker:
    """
    Timeline annotation.

    Attributes:
        label: Text shown on the timeline
        vertical_position: Row position in the marker lane
        duration: Length in frames
        color: CSS color string
        sound: Optional key into Timeline.marker_sounds
    """
    label: str
    vertical_position: float = 0.0
    duration: int = 1
    color: str = "#ffffff"
    sound: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "label": self.label,
            "verticalPosition": self.vertical_position,
            "duration": self.duration,
            "color": self.color,
        }
        if self.sound is not None:
            result["sound"] = self.sound
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Marker":
        return cls(
            label=data.get("label", ""),
            vertical_position=data.get("verticalPosition", 0.0),
            duration=data.get("duration", 1),
            color=data.get("color", "#ffffff"),
            sound=data.get("sound"),
        )


@dataclass
class Koma:
    """
    All shots captured at one frame, one slot per layer.

    Attributes:
        shots: Shot per layer, None for an empty layer
        backup_shots: Previous takes kept when a slot was reshot
        target: Target metadata for shooting this frame
        markers: Timeline markers starting at this frame
    """
    shots: List[Optional[Shot]] = field(default_factory=list)
    backup_shots: Optional[List[Shot]] = None
    target: Optional[KomaTarget] = None
    markers: Optional[List[Marker]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert metadata to dictionary. Shots are left to the serializer."""
        result: Dict[str, Any] = {}
        if self.target is not None:
            result["target"] = self.target.to_dict()
        if self.markers is not None:
            result["markers"] = [m.to_dict() for m in self.markers]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], shots: List[Optional[Shot]],
                  backup_shots: Optional[List[Shot]] = None) -> "Koma":
        """Create Koma from dictionary and its already loaded shots."""
        target = KomaTarget.from_dict(data["target"]) if data.get("target") is not None else None
        markers = None
        if data.get("markers") is not None:
            markers = [Marker.from_dict(m) for m in data["markers"]]
        return cls(shots=shots, backup_shots=backup_shots, target=target, markers=markers)


@dataclass
class CaptureShot:
    """Capture cursor: where the next shot will be stored."""
    frame: int = 0
    layer: int = 0

    def __post_init__(self):
        if self.frame < 0 or self.layer < 0:
            raise ValueError(f"Capture cursor must be non-negative, got ({self.frame}, {self.layer})")

    def to_dict(self) -> Dict[str, Any]:
        return {"frame": self.frame, "layer": self.layer}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureShot":
        return cls(frame=int(data.get("frame", 0)), layer=int(data.get("layer", 0)))


@dataclass
class LayerSettings:
    """Compositing settings for one layer."""
    opacity: float = 1.0
    mix_blend_mode: str = "normal"

    def __post_init__(self):
        if self.mix_blend_mode not in MIX_BLEND_MODES:
            raise ValueError(f"Invalid mix_blend_mode: {self.mix_blend_mode}")

    def to_dict(self) -> Dict[str, Any]:
        return {"opacity": self.opacity, "mixBlendMode": self.mix_blend_mode}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerSettings":
        return cls(
            opacity=data.get("opacity", 1.0),
            mix_blend_mode=data.get("mixBlendMode", "normal"),
        )


@dataclass
class Timeline:
    """Timeline view state, marker sounds and free drawing."""
    zoom_factor: float = 1.0
    marker_sounds: Dict[str, Blob] = field(default_factory=dict)
    drawing: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. Marker sounds are left to the serializer."""
        return {"zoomFactor": self.zoom_factor, "drawing": self.drawing}

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  marker_sounds: Optional[Dict[str, Blob]] = None) -> "Timeline":
        return cls(
            zoom_factor=data.get("zoomFactor", 1.0),
            marker_sounds=marker_sounds or {},
            drawing=data.get("drawing"),
        )


Transform = Union[str, Tuple[float, ...]]


def _transform_to_json(value: Transform) -> Any:
    return value if isinstance(value, str) else list(value)


def _transform_from_json(value: Any) -> Transform:
    return value if isinstance(value, str) else tuple(value)


@dataclass
class Viewport:
    """
    Viewport display settings.

    Transforms are 'fit' or a 2x3 affine matrix [a, b, c, d, tx, ty].
    """
    transform: Transform = "fit"
    liveview_transform: Transform = IDENTITY_TRANSFORM
    shot_transform: Transform = IDENTITY_TRANSFORM
    overlay: str = DEFAULT_OVERLAY
    overlay_mask_opacity: float = 0.5
    overlay_line_opacity: float = 1.0
    onionskin_blend: str = "normal"

    def __post_init__(self):
        if self.onionskin_blend not in MIX_BLEND_MODES:
            raise ValueError(f"Invalid onionskin_blend: {self.onionskin_blend}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transform": _transform_to_json(self.transform),
            "liveviewTransform": _transform_to_json(self.liveview_transform),
            "shotTransform": _transform_to_json(self.shot_transform),
            "overlay": self.overlay,
            "overlayMaskOpacity": self.overlay_mask_opacity,
            "overlayLineOpacity": self.overlay_line_opacity,
            "onionskinBlend": self.onionskin_blend,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Viewport":
        return cls(
            transform=_transform_from_json(data.get("transform", "fit")),
            liveview_transform=_transform_from_json(data.get("liveviewTransform", IDENTITY_TRANSFORM)),
            shot_transform=_transform_from_json(data.get("shotTransform", IDENTITY_TRANSFORM)),
            overlay=data.get("overlay", DEFAULT_OVERLAY),
            overlay_mask_opacity=data.get("overlayMaskOpacity", 0.5),
            overlay_line_opacity=data.get("overlayLineOpacity", 1.0),
            onionskin_blend=data.get("onionskinBlend", "normal"),
        )


@dataclass
class AudioTrack:
    """Soundtrack blob and the frame it starts at."""
    src: Optional[Blob] = None
    start_frame: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. The source blob is left to the serializer."""
        return {"startFrame": self.start_frame}


@dataclass
class Project:
    """
    Complete project: timeline content plus session settings.

    Only capture_shot and komas are content tracked by undo history. The
    rest is configuration and never enters the undo log.

    Attributes:
        name: Project name, also the prefix of every image filename
        fps: Playback frame rate
        capture_shot: Capture cursor (frame, layer)
        preview_range: (in, out) frames, in <= out
        onionskin: Signed frame offset of the onionskin overlay
        komas: Frame content
        layers: Per-layer compositing settings
        audio: Soundtrack
    """
    name: str = DEFAULT_PROJECT_NAME
    fps: int = DEFAULT_FPS
    capture_shot: CaptureShot = field(default_factory=CaptureShot)
    preview_range: Tuple[int, int] = (0, 0)
    onionskin: int = 0
    komas: List[Koma] = field(default_factory=list)
    resolution: Tuple[int, int] = DEFAULT_RESOLUTION
    timeline: Timeline = field(default_factory=Timeline)
    is_looping: bool = False
    shoot_condition: str = DEFAULT_SHOOT_CONDITION
    camera_configs: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_CAMERA_CONFIGS))
    visible_properties: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_VISIBLE_PROPERTIES))
    viewport: Viewport = field(default_factory=Viewport)
    layers: List[LayerSettings] = field(default_factory=list)
    audio: AudioTrack = field(default_factory=AudioTrack)

    def __post_init__(self):
        """Validate project structure."""
        self.preview_range = tuple(self.preview_range)
        self.resolution = tuple(self.resolution)
        if len(self.preview_range) != 2:
            raise ValueError(f"preview_range must be (in, out), got {self.preview_range}")
        if self.preview_range[0] > self.preview_range[1]:
            raise ValueError(f"preview_range in point must not exceed out point, got {self.preview_range}")
        if self.fps <= 0:
            raise ValueError(f"fps must be positive, got {self.fps}")

    @property
    def all_komas(self) -> List[Koma]:
        """
        Komas padded with empty ones up to the capture cursor.

        Always has one trailing empty Koma past max(len(komas), capture frame + 1).
        The padding Komas are fresh objects and not part of the project.
        """
        fill = max(self.capture_shot.frame - len(self.komas) + 1, 0) + 1
        return list(self.komas) + [Koma() for _ in range(fill)]

    def clone(self) -> "Project":
        """Structural copy. Blobs are shared, everything else is copied."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. Komas and blobs are left to the serializer."""
        return {
            "name": self.name,
            "fps": self.fps,
            "captureShot": self.capture_shot.to_dict(),
            "previewRange": list(self.preview_range),
            "onionskin": self.onionskin,
            "resolution": list(self.resolution),
            "timeline": self.timeline.to_dict(),
            "isLooping": self.is_looping,
            "shootCondition": self.shoot_condition,
            "cameraConfigs": copy.deepcopy(self.camera_configs),
            "visibleProperties": copy.deepcopy(self.visible_properties),
            "viewport": self.viewport.to_dict(),
            "layers": [layer.to_dict() for layer in self.layers],
            "audio": self.audio.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], komas: List[Koma],
                  marker_sounds: Optional[Dict[str, Blob]] = None,
                  audio_src: Optional[Blob] = None) -> "Project":
        """Create Project from dictionary and its already loaded komas and blobs."""
        audio = data.get("audio", {})
        return cls(
            name=data.get("name", DEFAULT_PROJECT_NAME),
            fps=data.get("fps", DEFAULT_FPS),
            capture_shot=CaptureShot.from_dict(data.get("captureShot", {})),
            preview_range=tuple(data.get("previewRange", (0, 0))),
            onionskin=data.get("onionskin", 0),
            komas=komas,
            resolution=tuple(data.get("resolution", DEFAULT_RESOLUTION)),
            timeline=Timeline.from_dict(data.get("timeline", {}), marker_sounds),
            is_looping=data.get("isLooping", False),
            shoot_condition=data.get("shootCondition", DEFAULT_SHOOT_CONDITION),
            camera_configs=dict(data.get("cameraConfigs", DEFAULT_CAMERA_CONFIGS)),
            visible_properties=copy.deepcopy(data.get("visibleProperties", DEFAULT_VISIBLE_PROPERTIES)),
            viewport=Viewport.from_dict(data.get("viewport", {})),
            layers=[LayerSettings.from_dict(layer) for layer in data.get("layers", [])],
            audio=AudioTrack(src=audio_src, start_frame=audio.get("startFrame", 0)),
        )


# Template every new project is cloned from. Never handed out directly.
EMPTY_PROJECT = Project()


def new_project() -> Project:
    """Return a fresh deep clone of the empty project template."""
    return EMPTY_PROJECT.clone()
