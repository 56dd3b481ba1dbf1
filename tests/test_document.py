import asyncio
import json

import pytest

from koma import document
from koma.config import SETTINGS_ENV, Settings
from koma.document import DocumentStore
from koma.errors import MalformedManifest, NoStorageContext, NotFound, PermissionDenied
from koma.models import Blob, Koma, LayerSettings
from koma.serializer import Serializer
from koma.storage.base import PermissionState
from koma.storage.blob_store import BlobStore
from koma.storage.local import LocalDirectoryRoot
from koma.storage.memory import MemoryRoot


def _seed(project, root):
    asyncio.run(Serializer(BlobStore()).save(project, root))


# ----------------------------------------------------------------------
# Mutations


def test_set_shot_grows_komas_and_slots(shot_factory):
    store = DocumentStore()
    shot = shot_factory()

    store.set_shot(5, 2, shot)

    komas = store.project.komas
    assert len(komas) == 6
    assert komas[5].shots == [None, None, shot]
    assert all(k.shots == [] for k in komas[:5])
    assert store.get_shot(5, 2) is shot
    assert store.get_layer_count(5) == 3


def test_set_shot_never_shrinks(shot_factory):
    store = DocumentStore()
    store.set_shot(3, 1, shot_factory())

    store.set_shot(0, 0, None)
    store.set_shot(3, 1, None)

    assert len(store.project.komas) == 4
    assert len(store.project.komas[3].shots) == 2


def test_set_shot_rejects_negative_index(shot_factory):
    store = DocumentStore()
    with pytest.raises(IndexError):
        store.set_shot(-1, 0, shot_factory())
    with pytest.raises(IndexError):
        store.set_shot(0, -1, shot_factory())


def test_get_shot_out_of_range_is_none(shot_factory):
    store = DocumentStore()
    store.set_shot(0, 0, shot_factory())

    assert store.get_shot(9, 0) is None
    assert store.get_shot(0, 4) is None
    assert store.get_shot(-1, 0) is None
    assert store.get_layer_count(9) == 0


def test_add_backup_shot(shot_factory):
    store = DocumentStore()
    first, second = shot_factory("a"), shot_factory("b")

    store.add_backup_shot(2, first)
    store.add_backup_shot(2, second)

    assert len(store.project.komas) == 3
    assert store.project.komas[2].backup_shots == [first, second]


def test_layer_settings_are_created_on_demand():
    store = DocumentStore()

    settings = store.get_layer_settings(2)

    assert settings == LayerSettings()
    assert len(store.project.layers) == 3

    store.set_layer_settings(1, opacity=0.25)
    store.set_layer_settings(1, mix_blend_mode="lighten")
    assert store.project.layers[1] == LayerSettings(opacity=0.25, mix_blend_mode="lighten")


def test_set_duration_only_grows():
    store = DocumentStore()

    store.set_duration(4)
    assert len(store.project.komas) == 5

    store.set_duration(2)
    assert len(store.project.komas) == 5


def test_preview_points_are_clamped():
    store = DocumentStore()
    store.set_duration(9)
    assert len(store.all_komas) == 11

    store.set_out_point(100)
    assert store.project.preview_range == (0, 10)

    store.set_in_point(50)
    assert store.project.preview_range == (10, 10)

    store.set_in_point(-3)
    store.set_out_point(-1)
    assert store.project.preview_range == (0, 0)


def test_config_setters():
    store = DocumentStore()
    sound = Blob(b"beep", "audio/wav")
    track = Blob(b"music", "audio/wav")

    store.rename("Walk cycle")
    store.set_fps(24)
    store.set_onionskin(-2)
    store.set_audio(track, start_frame=3)
    store.set_marker_sound("beep", sound)

    project = store.project
    assert (project.name, project.fps, project.onionskin) == ("Walk cycle", 24, -2)
    assert project.audio.src is track and project.audio.start_frame == 3
    assert project.timeline.marker_sounds == {"beep": sound}

    store.set_marker_sound("beep", None)
    assert project.timeline.marker_sounds == {}

    with pytest.raises(ValueError):
        store.set_fps(0)


# ----------------------------------------------------------------------
# Undo


def test_undo_restores_content_but_not_config(shot_factory):
    store = DocumentStore()
    shot = shot_factory()

    store.set_shot(0, 0, shot)
    store.set_capture_shot(1, 0)
    store.rename("Named")
    store.set_fps(24)

    assert store.undo()
    assert store.project.capture_shot.frame == 0
    assert store.get_shot(0, 0) == shot

    assert store.undo()
    assert store.get_shot(0, 0) is None
    assert store.project.name == "Named"
    assert store.project.fps == 24

    assert store.redo()
    assert store.get_shot(0, 0) == shot


def test_undo_without_history_is_noop():
    store = DocumentStore()
    store.rename("Only config")

    assert store.undo() is False
    assert store.project.name == "Only config"


def test_touch_after_direct_edit_records_history():
    store = DocumentStore()
    store.project.komas.append(Koma())
    store.touch(undoable=True)

    assert store.history.can_undo()
    assert store.undo()
    assert store.project.komas == []


def test_history_capacity_comes_from_settings(shot_factory):
    store = DocumentStore(settings=Settings(history_capacity=2, autosave=False))
    for frame in range(4):
        store.set_shot(frame, 0, shot_factory(str(frame)))

    assert store.history.size == 2
    assert store.undo()
    assert store.undo() is False


# ----------------------------------------------------------------------
# Save and open


def test_changes_autosave_to_scratch_root(shot_factory):
    scratch = MemoryRoot()

    async def scenario():
        store = DocumentStore(scratch_root=scratch)
        store.set_shot(0, 0, shot_factory())
        store.set_fps(24)
        await store.flush()
        return store

    store = asyncio.run(scenario())

    manifest = json.loads(scratch.entries["project.json"])
    assert manifest["fps"] == 24
    assert manifest["komas"][0]["shots"][0]["jpg"] == "Untitled_layer=0_0000.jpg"
    assert store.root is scratch
    assert not store.is_saved_to_disk
    assert not store.is_saving


def test_autosave_can_be_disabled(shot_factory):
    scratch = MemoryRoot()

    async def scenario():
        store = DocumentStore(scratch_root=scratch, settings=Settings(autosave=False))
        store.set_shot(0, 0, shot_factory())
        await store.flush()

    asyncio.run(scenario())
    assert scratch.entries == {}


def test_save_without_any_root_raises():
    store = DocumentStore()

    with pytest.raises(NoStorageContext):
        asyncio.run(store.save())
    with pytest.raises(NoStorageContext):
        asyncio.run(store.open())
    with pytest.raises(NoStorageContext):
        asyncio.run(store.save_as())
    with pytest.raises(NoStorageContext):
        asyncio.run(store.save_in_scratch())


def test_save_as_names_untitled_project_after_root(shot_factory):
    root = MemoryRoot("MyFilm")
    store = DocumentStore()
    store.set_shot(0, 0, shot_factory())

    asyncio.run(store.save_as(root))

    assert store.project.name == "MyFilm"
    assert "MyFilm_layer=0_0000.jpg" in root.entries
    assert store.root is root
    assert store.is_saved_to_disk


def test_save_as_keeps_existing_name():
    root = MemoryRoot("Folder")
    store = DocumentStore()
    store.rename("Scene 4")

    asyncio.run(store.save_as(root))

    assert json.loads(root.entries["project.json"])["name"] == "Scene 4"


def test_save_as_prompts_for_root_via_picker():
    picked = MemoryRoot("Picked")

    async def picker():
        return picked

    store = DocumentStore(picker=picker)
    asyncio.run(store.save_as())

    assert store.root is picked
    assert store.project.name == "Picked"
    assert "project.json" in picked.entries


def test_permission_is_requested_once_and_denial_raises():
    root = MemoryRoot("locked", permission=PermissionState.PROMPT,
                      request_result=PermissionState.DENIED)
    store = DocumentStore()

    with pytest.raises(PermissionDenied) as excinfo:
        asyncio.run(store.open(root))

    assert root.permission_requests == 1
    assert excinfo.value.root_name == "locked"
    assert store.root is None


def test_granted_prompt_allows_save():
    root = MemoryRoot("ask", permission=PermissionState.PROMPT,
                      request_result=PermissionState.GRANTED)
    store = DocumentStore()

    asyncio.run(store.save_as(root))

    assert root.permission_requests == 1
    assert "project.json" in root.entries


def test_open_loads_project_and_resets_history(sample_project):
    root = MemoryRoot("Scene")
    _seed(sample_project, root)
    store = DocumentStore()
    store.set_duration(3)

    assert asyncio.run(store.open(root)) is True

    assert store.project == sample_project
    assert store.root is root
    assert not store.history.can_undo()
    assert not store.is_opening


def test_concurrent_open_runs_once(sample_project, monkeypatch):
    root = MemoryRoot("Scene")
    _seed(sample_project, root)
    store = DocumentStore()

    clears = []
    original_clear = store.history.clear

    def counting_clear():
        clears.append(1)
        original_clear()

    monkeypatch.setattr(store.history, "clear", counting_clear)

    async def scenario():
        return await asyncio.gather(store.open(root), store.open(root))

    results = asyncio.run(scenario())

    assert results == [True, None]
    assert len(clears) == 1


@pytest.mark.parametrize("entries, error", [
    ({"project.json": b"{broken"}, MalformedManifest),
    ({}, NotFound),
    ({"project.json": json.dumps({"komas": [{"shots": [{"lv": "x.jpg", "jpg": "x.jpg"}]}]}).encode()},
     NotFound),
])
def test_failed_open_leaves_document_untouched(shot_factory, entries, error):
    current = MemoryRoot("Current")
    broken = MemoryRoot("Broken")
    broken.entries.update(entries)
    store = DocumentStore()
    store.rename("Keep")
    store.set_shot(0, 0, shot_factory())
    asyncio.run(store.save_as(current))
    project = store.project

    with pytest.raises(error):
        asyncio.run(store.open(broken))

    assert store.project is project
    assert store.project.name == "Keep"
    assert store.root is current
    assert store.history.can_undo()
    assert not store.is_opening


def test_resave_after_open_writes_only_manifest(sample_project):
    root = MemoryRoot("Scene")
    _seed(sample_project, root)
    before = dict(root.write_counts)
    store = DocumentStore()

    async def scenario():
        await store.open(root)
        await store.save()

    asyncio.run(scenario())

    after = dict(root.write_counts)
    assert after.pop("project.json") == before.pop("project.json") + 1
    assert after == before


def test_resave_writes_only_changed_shots(sample_project, shot_factory):
    root = MemoryRoot("Scene")
    _seed(sample_project, root)
    store = DocumentStore()
    asyncio.run(store.open(root))
    before = root.total_writes

    store.set_shot(0, 1, shot_factory("new"))
    asyncio.run(store.save())

    # lv + jpg for the new shot, plus the manifest
    assert root.total_writes == before + 3
    assert root.entries["Scene_layer=1_0000.jpg"] == b"jpg-new"


def test_create_new_clears_scratch_root(sample_project):
    scratch = MemoryRoot()
    _seed(sample_project, scratch)
    store = DocumentStore(scratch_root=scratch)

    asyncio.run(store.create_new())

    assert scratch.entries == {}
    assert store.root is scratch
    assert store.project.komas == []
    assert store.project.name == "Untitled"
    assert not store.is_saved_to_disk


def test_restore_reopens_scratch_session(sample_project):
    scratch = MemoryRoot()
    _seed(sample_project, scratch)
    store = DocumentStore(scratch_root=scratch)

    assert asyncio.run(store.restore()) is True
    assert store.project == sample_project
    assert store.root is scratch


def test_restore_with_empty_scratch_starts_fresh():
    scratch = MemoryRoot()
    store = DocumentStore(scratch_root=scratch)

    assert asyncio.run(store.restore()) is False
    assert store.root is scratch
    assert store.project.komas == []


def test_save_in_scratch_moves_project_back(shot_factory):
    scratch = MemoryRoot()
    disk = MemoryRoot("Disk")
    store = DocumentStore(scratch_root=scratch)
    store.set_shot(0, 0, shot_factory())
    asyncio.run(store.save_as(disk))
    assert store.is_saved_to_disk

    asyncio.run(store.save_in_scratch())

    assert store.root is scratch
    assert not store.is_saved_to_disk
    assert "project.json" in scratch.entries


def test_local_directory_round_trip(tmp_path, sample_project):
    path = tmp_path / "Scene"
    _seed(sample_project, LocalDirectoryRoot(path))

    store = DocumentStore()
    asyncio.run(store.open(LocalDirectoryRoot(path)))

    assert store.project == sample_project
    assert (path / "project.json").is_file()
    assert (path / "Scene_layer=2_0000.dng").read_bytes() == b"raw-f0l2"
    assert not list(path.glob(".*.tmp"))

    store.set_fps(30)
    asyncio.run(store.save())
    reopened = DocumentStore()
    asyncio.run(reopened.open(LocalDirectoryRoot(path)))
    assert reopened.project.fps == 30


@pytest.mark.parametrize("let_save_start", [True, False])
def test_create_new_waits_for_running_autosave(shot_factory, let_save_start):
    scratch = MemoryRoot()

    async def scenario():
        store = DocumentStore(scratch_root=scratch)
        store.set_shot(0, 0, shot_factory())
        if let_save_start:
            await asyncio.sleep(0)
        await store.create_new()
        await store.flush()

    asyncio.run(scenario())

    assert scratch.entries == {}
    assert asyncio.run(DocumentStore(scratch_root=scratch).restore()) is False


def test_create_new_waits_for_explicit_save(shot_factory):
    scratch = MemoryRoot()

    async def scenario():
        store = DocumentStore(scratch_root=scratch, settings=Settings(autosave=False))
        store.set_shot(0, 0, shot_factory())
        saving = asyncio.create_task(store.save())
        await asyncio.sleep(0)
        assert store.is_saving
        await store.create_new()
        await saving

    asyncio.run(scenario())
    assert scratch.entries == {}


def test_from_settings_uses_scratch_dir_and_log_level(tmp_path, monkeypatch):
    levels = []
    monkeypatch.setattr(document, "setup_logging", levels.append)
    settings = Settings(scratch_dir=str(tmp_path / "scratch"), log_level="DEBUG")

    store = DocumentStore.from_settings(settings)

    assert levels == ["DEBUG"]
    assert isinstance(store.scratch_root, LocalDirectoryRoot)
    assert store.scratch_root.path == tmp_path / "scratch"
    assert store.scratch_root.name == ""
    assert store.settings is settings

    asyncio.run(store.save())
    assert (tmp_path / "scratch" / "project.json").is_file()
    assert not store.is_saved_to_disk


def test_from_settings_reads_settings_file(tmp_path, monkeypatch):
    monkeypatch.setattr(document, "setup_logging", lambda level: None)
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"scratch_dir": str(tmp_path / "work"), "history_capacity": 5}))
    monkeypatch.setenv(SETTINGS_ENV, str(path))

    store = DocumentStore.from_settings()

    assert store.scratch_root.path == tmp_path / "work"
    assert store.history.capacity == 5
