"""Tests for FileTree — create, upload, rename, move, copy, listings, quota."""

from __future__ import annotations

import io
import zipfile

import pytest

from tmacloud.events import EventType
from tmacloud.fs.exceptions import (
    CycleRejectedError,
    InvariantViolationError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
)
from tmacloud.fs.tree import FileTree
from tmacloud.models import AppSettings
from tmacloud.settings import SettingsCache


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _read_all(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


async def _object_count(tree: FileTree) -> int:
    return len(await tree.managed_store.iter_objects())


# =========================================================================
# Create folder
# =========================================================================


class TestCreateFolder:
    async def test_create_at_root(self, tree, alice):
        info = await tree.create_folder(alice, "docs")
        assert info.name == "docs"
        assert info.type == "folder"
        assert info.parent_id is None
        assert info.is_folder

    async def test_managed_folder_has_no_object(self, tree, alice):
        await tree.create_folder(alice, "docs")
        assert await _object_count(tree) == 0

    async def test_nested(self, tree, alice):
        parent = await tree.create_folder(alice, "docs")
        child = await tree.create_folder(alice, "2024", parent.id)
        assert child.parent_id == parent.id

    async def test_duplicate_rejected(self, tree, alice):
        await tree.create_folder(alice, "docs")
        with pytest.raises(NameConflictError):
            await tree.create_folder(alice, "docs")

    async def test_duplicate_auto_renamed(self, tree, alice):
        await tree.create_folder(alice, "docs")
        info = await tree.create_folder(alice, "docs", auto_rename=True)
        assert info.name == "docs (1)"

    async def test_invalid_name(self, tree, alice):
        with pytest.raises(ValueError):
            await tree.create_folder(alice, "a/b")

    async def test_parent_must_exist(self, tree, alice):
        with pytest.raises(NotFoundError):
            await tree.create_folder(alice, "docs", "missing-id")

    async def test_parent_must_be_folder(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        with pytest.raises(InvariantViolationError):
            await tree.create_folder(alice, "docs", f.id)

    async def test_parent_of_other_owner(self, tree, alice, make_user):
        await make_user("bob")
        bobs = await tree.create_folder("bob", "private")
        with pytest.raises(PermissionDeniedError):
            await tree.create_folder(alice, "docs", bobs.id)


# =========================================================================
# Upload
# =========================================================================


class TestUpload:
    async def test_upload_bytes(self, tree, alice):
        info = await tree.upload(alice, "notes.txt", b"hello")
        assert info.size == 5
        assert info.mime_type == "text/plain"
        assert info.backend == "managed"
        _info, stream = await tree.open_download(alice, info.id)
        assert await _read_all(stream) == b"hello"

    async def test_upload_stream(self, tree, alice):
        info = await tree.upload(alice, "data.bin", _chunks(b"ab", b"cd"))
        assert info.size == 4

    async def test_explicit_mime_type(self, tree, alice):
        info = await tree.upload(alice, "blob", b"x", mime_type="image/png")
        assert info.mime_type == "image/png"

    async def test_key_derived_from_id(self, tree, alice):
        info = await tree.upload(alice, "Report.PDF", b"x")
        (obj,) = await tree.managed_store.iter_objects()
        assert obj.key == f"{info.id[:2]}/{info.id}.pdf"

    async def test_duplicate_name_auto_renamed(self, tree, alice):
        await tree.upload(alice, "a.txt", b"1")
        info = await tree.upload(alice, "a.txt", b"2")
        assert info.name == "a (1).txt"

    async def test_duplicate_without_auto_rename(self, tree, alice):
        await tree.upload(alice, "a.txt", b"1")
        with pytest.raises(NameConflictError):
            await tree.upload(alice, "a.txt", b"2", auto_rename=False)
        assert await _object_count(tree) == 1

    async def test_missing_parent_writes_nothing(self, tree, alice):
        with pytest.raises(NotFoundError):
            await tree.upload(alice, "a.txt", b"x", "missing")
        assert await _object_count(tree) == 0

    async def test_into_folder(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        info = await tree.upload(alice, "a.txt", b"x", folder.id)
        children = await tree.list_children(alice, folder.id)
        assert [c.id for c in children] == [info.id]


# =========================================================================
# Quota
# =========================================================================


class TestQuota:
    async def test_three_uploads_with_room_for_two(self, tree, make_user):
        await make_user("carol", storage_limit=20)
        first = await tree.upload("carol", "one.bin", b"x" * 10)
        second = await tree.upload("carol", "two.bin", b"x" * 10)
        with pytest.raises(QuotaExceededError):
            await tree.upload("carol", "three.bin", b"x" * 10)

        usage = await tree.storage_usage("carol")
        assert usage.used == first.size + second.size == 20
        assert usage.limit == 20
        assert usage.remaining == 0
        assert await _object_count(tree) == 2

    async def test_rejected_before_any_write(self, tree, make_user):
        await make_user("carol", storage_limit=5)
        with pytest.raises(QuotaExceededError):
            await tree.upload("carol", "big.bin", b"x" * 6)
        assert await _object_count(tree) == 0

    async def test_undeclared_stream_capped(self, tree, make_user):
        await make_user("carol", storage_limit=5)
        with pytest.raises(QuotaExceededError):
            await tree.upload("carol", "big.bin", _chunks(b"xxx", b"xxx"))
        assert await _object_count(tree) == 0
        assert (await tree.storage_usage("carol")).used == 0

    async def test_trash_still_counts(self, tree, make_user):
        await make_user("carol", storage_limit=10)
        f = await tree.upload("carol", "a.bin", b"x" * 10)
        await tree.trash("carol", [f.id])
        with pytest.raises(QuotaExceededError):
            await tree.upload("carol", "b.bin", b"x")

    async def test_max_upload_size_setting(self, session_factory, managed_store, alice):
        async with session_factory() as session:
            session.add(AppSettings(max_upload_size_bytes=4))
            await session.commit()
        tree = FileTree(
            session_factory, managed_store, settings_cache=SettingsCache(session_factory)
        )
        with pytest.raises(QuotaExceededError, match="maximum upload size"):
            await tree.upload(alice, "a.bin", b"12345")
        assert await _object_count(tree) == 0
        assert (await tree.upload(alice, "b.bin", b"1234")).size == 4

    async def test_usage_without_limit_uses_capacity(self, tree, alice):
        usage = await tree.storage_usage(alice)
        assert usage.limit == tree.managed_store.capacity()


# =========================================================================
# Replace content
# =========================================================================


class TestReplaceContent:
    async def test_replace(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"old")
        info = await tree.replace_content(alice, f.id, b"new content")
        assert info.size == 11
        _info, stream = await tree.open_download(alice, f.id)
        assert await _read_all(stream) == b"new content"

    async def test_replace_counts_superseded_bytes(self, tree, make_user):
        await make_user("carol", storage_limit=10)
        f = await tree.upload("carol", "a.bin", b"x" * 8)
        await tree.replace_content("carol", f.id, b"y" * 10)
        assert (await tree.storage_usage("carol")).used == 10

    async def test_replace_folder_rejected(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        with pytest.raises(InvariantViolationError):
            await tree.replace_content(alice, folder.id, b"x")


# =========================================================================
# Rename
# =========================================================================


class TestRename:
    async def test_rename_keeps_object(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        before = await tree.managed_store.iter_objects()
        info = await tree.rename(alice, f.id, "b.txt")
        assert info.name == "b.txt"
        assert await tree.managed_store.iter_objects() == before

    async def test_rename_conflict(self, tree, alice):
        await tree.upload(alice, "a.txt", b"x")
        b = await tree.upload(alice, "b.txt", b"x")
        with pytest.raises(NameConflictError):
            await tree.rename(alice, b.id, "a.txt")

    async def test_rename_to_same_name(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        assert (await tree.rename(alice, f.id, "a.txt")).name == "a.txt"

    async def test_rename_trashed_entry(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        await tree.trash(alice, [f.id])
        with pytest.raises(NotFoundError):
            await tree.rename(alice, f.id, "b.txt")


# =========================================================================
# Move
# =========================================================================


class TestMove:
    async def test_move_into_folder(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        f = await tree.upload(alice, "a.txt", b"x")
        result = await tree.move(alice, [f.id], folder.id)
        assert result.success
        assert (await tree.get(alice, f.id)).parent_id == folder.id

    async def test_move_to_root(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        f = await tree.upload(alice, "a.txt", b"x", folder.id)
        await tree.move(alice, [f.id], None)
        assert (await tree.get(alice, f.id)).parent_id is None

    async def test_folder_into_its_child_rejected(self, tree, alice):
        a = await tree.create_folder(alice, "A")
        b = await tree.create_folder(alice, "B", a.id)
        with pytest.raises(CycleRejectedError):
            await tree.move(alice, [a.id], b.id)
        assert (await tree.get(alice, a.id)).parent_id is None
        assert (await tree.get(alice, b.id)).parent_id == a.id

    async def test_folder_into_itself_rejected(self, tree, alice):
        a = await tree.create_folder(alice, "A")
        with pytest.raises(CycleRejectedError):
            await tree.move(alice, [a.id], a.id)

    async def test_cycle_rejects_whole_request(self, tree, alice):
        a = await tree.create_folder(alice, "A")
        b = await tree.create_folder(alice, "B", a.id)
        f = await tree.upload(alice, "f.txt", b"x")
        with pytest.raises(CycleRejectedError):
            await tree.move(alice, [f.id, a.id], b.id)
        assert (await tree.get(alice, f.id)).parent_id is None

    async def test_conflict_reported_per_item(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        await tree.upload(alice, "a.txt", b"1", folder.id)
        clash = await tree.upload(alice, "a.txt", b"2")
        other = await tree.upload(alice, "b.txt", b"3")

        result = await tree.move(alice, [clash.id, other.id], folder.id)
        assert not result.success
        assert [item.error_kind for item in result.failed] == ["name_conflict"]
        assert [item.entry_id for item in result.succeeded] == [other.id]

    async def test_missing_entry_reported(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        result = await tree.move(alice, ["missing"], folder.id)
        assert result.failed[0].error_kind == "not_found"

    async def test_destination_must_be_folder(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        g = await tree.upload(alice, "b.txt", b"x")
        with pytest.raises(InvariantViolationError):
            await tree.move(alice, [f.id], g.id)


# =========================================================================
# Copy
# =========================================================================


class TestCopy:
    async def test_copy_file_gets_new_object(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"hello")
        result = await tree.copy(alice, [f.id], None)
        copy = result.items[0].entry
        assert copy is not None
        assert copy.id != f.id
        assert copy.name == "a (1).txt"
        assert await _object_count(tree) == 2

    async def test_copy_is_independent(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"hello")
        copy = (await tree.copy(alice, [f.id], None)).items[0].entry
        assert copy is not None
        await tree.trash(alice, [copy.id])
        await tree.delete_permanently(alice, [copy.id])

        _info, stream = await tree.open_download(alice, f.id)
        assert await _read_all(stream) == b"hello"
        assert await _object_count(tree) == 1

    async def test_copy_folder_recursively(self, tree, alice):
        src = await tree.create_folder(alice, "src")
        sub = await tree.create_folder(alice, "sub", src.id)
        await tree.upload(alice, "a.txt", b"a", src.id)
        await tree.upload(alice, "b.txt", b"bb", sub.id)
        dest = await tree.create_folder(alice, "dest")

        result = await tree.copy(alice, [src.id], dest.id)
        top = result.items[0].entry
        assert top is not None
        assert top.parent_id == dest.id
        assert top.name == "src"
        assert await tree.folder_size(alice, top.id) == 3
        names = [c.name for c in await tree.list_children(alice, top.id)]
        assert names == ["sub", "a.txt"]
        assert await _object_count(tree) == 4

    async def test_copy_into_own_subtree_rejected(self, tree, alice):
        a = await tree.create_folder(alice, "A")
        b = await tree.create_folder(alice, "B", a.id)
        with pytest.raises(CycleRejectedError):
            await tree.copy(alice, [a.id], b.id)
        assert await tree.list_children(alice, b.id) == []

    async def test_copy_skips_trashed_descendants(self, tree, alice):
        src = await tree.create_folder(alice, "src")
        gone = await tree.upload(alice, "gone.txt", b"x", src.id)
        await tree.upload(alice, "kept.txt", b"y", src.id)
        await tree.trash(alice, [gone.id])

        top = (await tree.copy(alice, [src.id], None)).items[0].entry
        assert top is not None
        assert [c.name for c in await tree.list_children(alice, top.id)] == ["kept.txt"]

    async def test_copy_respects_quota(self, tree, make_user):
        await make_user("carol", storage_limit=15)
        f = await tree.upload("carol", "a.bin", b"x" * 10)
        result = await tree.copy("carol", [f.id], None)
        assert result.failed[0].error_kind == "quota_exceeded"
        assert await _object_count(tree) == 1


# =========================================================================
# Listings, stars, search
# =========================================================================


class TestListings:
    async def test_folders_first(self, tree, alice):
        await tree.upload(alice, "a.txt", b"x")
        await tree.create_folder(alice, "zeta")
        names = [c.name for c in await tree.list_children(alice)]
        assert names == ["zeta", "a.txt"]

    async def test_sort_by_size_desc(self, tree, alice):
        await tree.upload(alice, "small.bin", b"x")
        await tree.upload(alice, "big.bin", b"xxxx")
        names = [c.name for c in await tree.list_children(alice, sort_by="size", order="desc")]
        assert names == ["big.bin", "small.bin"]

    async def test_pagination(self, tree, alice):
        for name in ("a", "b", "c"):
            await tree.upload(alice, f"{name}.txt", b"x")
        page = await tree.list_children(alice, limit=2, offset=1)
        assert [c.name for c in page] == ["b.txt", "c.txt"]

    async def test_invalid_sort(self, tree, alice):
        with pytest.raises(ValueError):
            await tree.list_children(alice, sort_by="owner_id")

    async def test_other_owner_not_listed(self, tree, alice, make_user):
        await make_user("bob")
        await tree.upload("bob", "secret.txt", b"x")
        assert await tree.list_children(alice) == []

    async def test_get_other_owner_denied(self, tree, alice, make_user):
        await make_user("bob")
        f = await tree.upload("bob", "secret.txt", b"x")
        with pytest.raises(PermissionDeniedError):
            await tree.get(alice, f.id)

    async def test_starred(self, tree, alice):
        a = await tree.upload(alice, "a.txt", b"x")
        await tree.upload(alice, "b.txt", b"x")
        result = await tree.set_starred(alice, [a.id], True)
        assert result.success
        assert [s.id for s in await tree.list_starred(alice)] == [a.id]
        await tree.set_starred(alice, [a.id], False)
        assert await tree.list_starred(alice) == []

    async def test_search_case_insensitive(self, tree, alice):
        await tree.upload(alice, "Quarterly Report.pdf", b"x")
        await tree.upload(alice, "notes.txt", b"x")
        hits = await tree.search(alice, "report")
        assert [h.name for h in hits] == ["Quarterly Report.pdf"]

    async def test_search_excludes_trash(self, tree, alice):
        f = await tree.upload(alice, "report.pdf", b"x")
        await tree.trash(alice, [f.id])
        assert await tree.search(alice, "report") == []

    @pytest.mark.parametrize("query", ["a_b", "100%"])
    async def test_search_wildcards_match_literally(self, tree, alice, query):
        await tree.upload(alice, "a_b.txt", b"x")
        await tree.upload(alice, "axb.txt", b"x")
        await tree.upload(alice, "100% done.txt", b"x")
        await tree.upload(alice, "1000 done.txt", b"x")
        hits = [h.name for h in await tree.search(alice, query)]
        assert len(hits) == 1
        assert query in hits[0]

    @pytest.mark.parametrize("query", ["", "   "])
    async def test_blank_search_matches_nothing(self, tree, alice, query):
        await tree.upload(alice, "a.txt", b"x")
        assert await tree.search(alice, query) == []

    async def test_folder_size(self, tree, alice):
        folder = await tree.create_folder(alice, "docs")
        sub = await tree.create_folder(alice, "sub", folder.id)
        await tree.upload(alice, "a.bin", b"x" * 3, folder.id)
        await tree.upload(alice, "b.bin", b"x" * 4, sub.id)
        assert await tree.folder_size(alice, folder.id) == 7


# =========================================================================
# Download
# =========================================================================


class TestDownload:
    async def test_folder_streams_zip(self, tree, alice):
        docs = await tree.create_folder(alice, "docs")
        sub = await tree.create_folder(alice, "sub", docs.id)
        await tree.create_folder(alice, "empty", docs.id)
        await tree.upload(alice, "a.txt", b"alpha", docs.id)
        await tree.upload(alice, "b.txt", b"beta", sub.id)

        info, stream = await tree.open_download(alice, docs.id)
        assert info.id == docs.id
        assert info.mime_type == "application/zip"
        with zipfile.ZipFile(io.BytesIO(await _read_all(stream))) as zf:
            assert sorted(zf.namelist()) == [
                "docs/",
                "docs/a.txt",
                "docs/empty/",
                "docs/sub/",
                "docs/sub/b.txt",
            ]
            assert zf.read("docs/a.txt") == b"alpha"
            assert zf.read("docs/sub/b.txt") == b"beta"

    async def test_folder_zip_leaves_out_trash(self, tree, alice):
        docs = await tree.create_folder(alice, "docs")
        old = await tree.create_folder(alice, "old", docs.id)
        await tree.upload(alice, "inside.txt", b"x", old.id)
        await tree.upload(alice, "keep.txt", b"keep", docs.id)
        gone = await tree.upload(alice, "gone.txt", b"x", docs.id)
        await tree.trash(alice, [old.id, gone.id])

        _info, stream = await tree.open_download(alice, docs.id)
        with zipfile.ZipFile(io.BytesIO(await _read_all(stream))) as zf:
            assert sorted(zf.namelist()) == ["docs/", "docs/keep.txt"]

    async def test_folder_zip_skips_missing_object(self, tree, alice):
        docs = await tree.create_folder(alice, "docs")
        await tree.upload(alice, "a.txt", b"x", docs.id)
        (obj,) = await tree.managed_store.iter_objects()
        await tree.managed_store.delete(obj.key)

        _info, stream = await tree.open_download(alice, docs.id)
        with zipfile.ZipFile(io.BytesIO(await _read_all(stream))) as zf:
            assert zf.namelist() == ["docs/"]

    async def test_trashed_folder_not_downloadable(self, tree, alice):
        docs = await tree.create_folder(alice, "docs")
        await tree.trash(alice, [docs.id])
        with pytest.raises(NotFoundError):
            await tree.open_download(alice, docs.id)

    async def test_missing_object_reported(self, tree, alice):
        f = await tree.upload(alice, "a.txt", b"x")
        (obj,) = await tree.managed_store.iter_objects()
        await tree.managed_store.delete(obj.key)
        with pytest.raises(NotFoundError):
            await tree.open_download(alice, f.id)


# =========================================================================
# Events
# =========================================================================


class TestEvents:
    async def test_mutations_publish_events(self, tree, event_bus, alice):
        seen: list = []

        async def collect(event) -> None:
            seen.append(event)

        event_bus.register_all(collect)
        folder = await tree.create_folder(alice, "docs")
        f = await tree.upload(alice, "a.txt", b"x", folder.id)
        await tree.rename(alice, f.id, "b.txt")
        await tree.trash(alice, [folder.id])
        await event_bus.drain()

        assert [e.event_type for e in seen] == [
            EventType.FOLDER_CREATED,
            EventType.FILE_UPLOADED,
            EventType.ENTRY_RENAMED,
            EventType.ENTRY_TRASHED,
        ]
        assert seen[1].resource_id == f.id
        assert seen[1].owner_id == alice
        assert seen[2].metadata == {"old_name": "a.txt", "name": "b.txt"}
        assert seen[3].metadata["count"] == 2

    async def test_failed_operation_publishes_nothing(self, tree, event_bus, alice):
        seen: list = []

        async def collect(event) -> None:
            seen.append(event)

        event_bus.register_all(collect)
        await tree.create_folder(alice, "docs")
        with pytest.raises(NameConflictError):
            await tree.create_folder(alice, "docs")
        await event_bus.drain()
        assert len(seen) == 1
