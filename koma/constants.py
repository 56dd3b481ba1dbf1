"""
Project constants and default template values.

File naming, blend modes, and the empty project every session starts from.
"""

# Manifest written at the top of every project root
MANIFEST_NAME = "project.json"

# Packed single-file project bundles
PACKED_EXTENSION = ".koma"
PACKED_VERSION = "1.0"

# Asset extensions per kind
IMAGE_EXTENSION = "jpg"
RAW_EXTENSION = "dng"
AUDIO_EXTENSION = "wav"

AUDIO_FILENAME = f"audio.{AUDIO_EXTENSION}"
MARKER_SOUND_PREFIX = "marker_"
LIVEVIEW_SUFFIX = "_lv"

# Frame numbers in filenames are zero-padded to this width
FRAME_DIGITS = 4

# Undo log capacity (number of snapshots)
HISTORY_CAPACITY = 400

MIX_BLEND_MODES = ("normal", "lighten", "darken", "difference")

DEFAULT_PROJECT_NAME = "Untitled"
DEFAULT_FPS = 15
DEFAULT_RESOLUTION = (1920, 1280)
DEFAULT_SHOOT_CONDITION = "() => true"

DEFAULT_CAMERA_CONFIGS = {
    "focalLength": 50,
    "focusDistance": 24,
    "aperture": 5.6,
    "shutterSpeed": "1/100",
    "iso": 100,
    "colorTemperature": 5500,
}

DEFAULT_VISIBLE_PROPERTIES = {
    "shootTime": {"visible": True, "color": "#ffffff"},
    "focalLength": {"visible": True, "color": "#ff0000"},
    "focusDistance": {"visible": True, "color": "#00ff00"},
    "aperture": {"visible": True, "color": "#0000ff"},
    "shutterSpeed": {"visible": True, "color": "#ffff00"},
    "iso": {"visible": True, "color": "#00ffff"},
    "colorTemperature": {"visible": True, "color": "#ff00ff"},
}

# Row-major 2x3 affine matrix [a, b, c, d, tx, ty]
IDENTITY_TRANSFORM = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)

DEFAULT_OVERLAY = """
<path class="letterbox" d="m0,0v1h1V0H0Zm.9.9H.1V.1h.8v.8Z"/>
<line class="line" x1="0" y1=".5" x2="1" y2=".5" />
<line class="line" x1=".5" y1="0" x2=".5" y2="1" />
"""
