import asyncio

import msgpack
import pytest

from koma.errors import MalformedManifest, NotFound, PermissionDenied
from koma.storage.base import PermissionState, ensure_permission, read_file, write_file
from koma.storage.local import LocalDirectoryRoot
from koma.storage.memory import MemoryRoot
from koma.storage.packed import PackedFileRoot


def test_local_write_read_and_list(tmp_path):
    root = LocalDirectoryRoot(tmp_path / "film")

    async def scenario():
        await write_file(root, "a.jpg", b"image")
        await write_file(root, "project.json", '{"name": "film"}')
        return await read_file(root, "a.jpg"), await root.keys()

    data, keys = asyncio.run(scenario())

    assert data == b"image"
    assert keys == ["a.jpg", "project.json"]
    assert root.name == "film"
    assert (tmp_path / "film" / "project.json").read_text() == '{"name": "film"}'


def test_local_remove_and_missing_entries(tmp_path):
    root = LocalDirectoryRoot(tmp_path)
    (tmp_path / "old.jpg").write_bytes(b"x")

    asyncio.run(root.remove_entry("old.jpg"))

    assert not (tmp_path / "old.jpg").exists()
    with pytest.raises(NotFound):
        asyncio.run(root.remove_entry("old.jpg"))
    with pytest.raises(NotFound):
        asyncio.run(root.get_file("missing.jpg"))


@pytest.mark.parametrize("name", ["", "..", "a/b.jpg", "a\\b.jpg"])
def test_filenames_cannot_escape_root(tmp_path, name):
    root = LocalDirectoryRoot(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(root.get_file(name, create=True))


def test_failed_write_keeps_previous_content(tmp_path):
    root = LocalDirectoryRoot(tmp_path)
    (tmp_path / "a.jpg").write_bytes(b"old")

    async def scenario():
        handle = await root.get_file("a.jpg")
        async with await handle.open_writable() as writer:
            await writer.write(b"partial")
            raise RuntimeError("interrupted")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())

    assert (tmp_path / "a.jpg").read_bytes() == b"old"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.jpg"]


def test_file_appears_only_after_close(tmp_path):
    root = LocalDirectoryRoot(tmp_path)

    async def scenario():
        handle = await root.get_file("new.jpg", create=True)
        writer = await handle.open_writable()
        await writer.write(b"data")
        visible_before_close = await root.keys()
        await writer.close()
        return visible_before_close

    assert asyncio.run(scenario()) == []
    assert (tmp_path / "new.jpg").read_bytes() == b"data"


def test_ensure_permission_granted_does_not_prompt():
    root = MemoryRoot()
    asyncio.run(ensure_permission(root))
    assert root.permission_requests == 0


def test_ensure_permission_prompts_once():
    root = MemoryRoot(permission=PermissionState.PROMPT, request_result=PermissionState.GRANTED)

    asyncio.run(ensure_permission(root))

    assert root.permission_requests == 1
    assert root.permission == PermissionState.GRANTED


def test_ensure_permission_denied_raises():
    root = MemoryRoot("shared", permission=PermissionState.DENIED)

    with pytest.raises(PermissionDenied) as excinfo:
        asyncio.run(ensure_permission(root, "read"))

    assert root.permission_requests == 1
    assert excinfo.value.mode == "read"
    assert isinstance(excinfo.value, PermissionError)


def test_memory_root_non_atomic_overwrites_in_place():
    root = MemoryRoot(is_atomic=False)
    root.entries["a.jpg"] = b"old"

    async def scenario():
        handle = await root.get_file("a.jpg")
        writer = await handle.open_writable()
        truncated = root.entries["a.jpg"]
        await writer.write(b"ne")
        await writer.write(b"w")
        await writer.close()
        return truncated

    assert asyncio.run(scenario()) == b""
    assert root.entries["a.jpg"] == b"new"
    assert root.write_counts["a.jpg"] == 1


def test_packed_bundle_round_trip(tmp_path):
    root = PackedFileRoot(tmp_path / "scene")
    assert root.path.suffix == ".koma"
    assert root.name == "scene"

    async def write():
        await write_file(root, "a.jpg", b"image")
        await write_file(root, "project.json", "{}")

    asyncio.run(write())

    reopened = PackedFileRoot(tmp_path / "scene.koma")

    async def read():
        return await read_file(reopened, "a.jpg"), await reopened.keys()

    data, keys = asyncio.run(read())
    assert data == b"image"
    assert keys == ["a.jpg", "project.json"]

    bundle = msgpack.unpackb((tmp_path / "scene.koma").read_bytes(), raw=False)
    assert bundle["version"] == "1.0"
    assert bundle["entries"]["a.jpg"] == b"image"


def test_packed_bundle_remove_entry(tmp_path):
    root = PackedFileRoot(tmp_path / "scene.koma")

    async def scenario():
        await write_file(root, "a.jpg", b"image")
        await root.remove_entry("a.jpg")
        with pytest.raises(NotFound):
            await root.remove_entry("a.jpg")

    asyncio.run(scenario())
    assert asyncio.run(PackedFileRoot(tmp_path / "scene.koma").keys()) == []


def test_packed_bundle_rejects_corrupt_file(tmp_path):
    path = tmp_path / "broken.koma"
    path.write_bytes(b"\xc1\xc1\xc1")

    with pytest.raises(MalformedManifest):
        asyncio.run(PackedFileRoot(path).keys())


def test_packed_bundle_rejects_other_major_version(tmp_path):
    path = tmp_path / "future.koma"
    path.write_bytes(msgpack.packb({"version": "2.0", "entries": {}}, use_bin_type=True))

    with pytest.raises(MalformedManifest, match="version"):
        asyncio.run(PackedFileRoot(path).keys())


def test_packed_bundle_missing_file_is_empty(tmp_path):
    root = PackedFileRoot(tmp_path / "new.koma")

    assert asyncio.run(root.keys()) == []
    with pytest.raises(NotFound):
        asyncio.run(PackedFileRoot(tmp_path / "new.koma").get_file("project.json"))
