"""
Engine settings stored in ~/.koma/settings.json.

Loaded values are merged over the defaults so settings added in newer
versions appear in old files. KOMA_SETTINGS overrides the file location.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from koma.constants import HISTORY_CAPACITY, MANIFEST_NAME

logger = logging.getLogger(__name__)

SETTINGS_ENV = "KOMA_SETTINGS"


def default_settings_path() -> Path:
    override = os.getenv(SETTINGS_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".koma" / "settings.json"


@dataclass
class Settings:
    """
    Attributes:
        history_capacity: Number of undo snapshots kept
        manifest_name: Manifest filename inside each project root
        scratch_dir: Directory used for unsaved sessions
        autosave: Save after every change
        log_level: Logging level name
    """
    history_capacity: int = HISTORY_CAPACITY
    manifest_name: str = MANIFEST_NAME
    scratch_dir: str = str(Path.home() / ".koma" / "scratch")
    autosave: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        if self.history_capacity < 1:
            raise ValueError(f"history_capacity must be at least 1, got {self.history_capacity}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        defaults = asdict(cls())
        defaults.update({k: v for k, v in data.items() if k in known})
        return cls(**defaults)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load settings, falling back to defaults.

    A missing file yields defaults. An unreadable or invalid file is logged
    and also yields defaults.
    """
    config_path = Path(path) if path is not None else default_settings_path()

    if not config_path.exists():
        return Settings()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise ValueError("settings must be a JSON object")
        return Settings.from_dict(loaded)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("Failed to load settings from %s: %s", config_path, e)
        return Settings()


def save_settings(settings: Settings, path: Optional[Union[str, Path]] = None):
    """Write settings to the config file."""
    config_path = Path(path) if path is not None else default_settings_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)
