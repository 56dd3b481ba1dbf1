"""Shared fixtures for persistence engine tests."""
import pytest

from koma.models import Blob, Koma, KomaTarget, Marker, Project, Shot, Tracker, LayerSettings


def make_shot(tag: str = "a", raw: bool = False, **kwargs) -> Shot:
    return Shot(
        lv=Blob(f"lv-{tag}".encode(), "image/jpeg"),
        jpg=Blob(f"jpg-{tag}".encode(), "image/jpeg"),
        raw=Blob(f"raw-{tag}".encode(), "image/x-adobe-dng") if raw else None,
        camera_configs={"iso": 100, "aperture": 5.6},
        **kwargs,
    )


@pytest.fixture
def shot_factory():
    return make_shot


@pytest.fixture
def sample_project() -> Project:
    """Project touching every kind of binary leaf and optional field."""
    project = Project(name="Scene")
    project.komas = [
        Koma(shots=[make_shot("f0l0"), None, make_shot("f0l2", raw=True)]),
        Koma(
            shots=[make_shot("f1l0", tracker=Tracker((1.0, 2.0, 3.0), (0.0, 0.0, 0.0, 1.0)),
                             dmx=[0.5, 1.0], shoot_time=33.0, capture_date=1700000000000.0)],
            backup_shots=[make_shot("f1b0"), make_shot("f1b1", raw=True)],
            target=KomaTarget(camera_configs={"iso": 200}, dmx=[0.25]),
            markers=[Marker(label="clap", vertical_position=1.0, duration=3, color="#ff0000", sound="clap")],
        ),
        Koma(),
    ]
    project.timeline.marker_sounds = {"clap": Blob(b"clap-wav", "audio/wav")}
    project.audio.src = Blob(b"soundtrack", "audio/wav")
    project.audio.start_frame = 2
    project.layers = [LayerSettings(), LayerSettings(opacity=0.5, mix_blend_mode="darken")]
    project.preview_range = (0, 2)
    project.onionskin = -1
    return project
