"""Tests for trash, restore, permanent delete, and empty trash."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tmacloud.fs.exceptions import NotFoundError
from tmacloud.fs.reconcile import OrphanSweeper


async def _object_count(tree) -> int:
    return len(await tree.managed_store.iter_objects())


@pytest.fixture
async def docs(tree, alice):
    """``docs/`` holding ``a.txt`` and ``sub/b.txt``."""
    folder = await tree.create_folder(alice, "docs")
    sub = await tree.create_folder(alice, "sub", folder.id)
    a = await tree.upload(alice, "a.txt", b"aaa", folder.id)
    b = await tree.upload(alice, "b.txt", b"bb", sub.id)
    return {"docs": folder, "sub": sub, "a": a, "b": b}


# =========================================================================
# Trash
# =========================================================================


class TestTrash:
    async def test_cascade_hides_subtree(self, tree, alice, docs):
        result = await tree.trash(alice, [docs["docs"].id])
        assert result.success
        assert await tree.list_children(alice) == []
        for key in ("sub", "a", "b"):
            with pytest.raises(NotFoundError):
                await tree.get(alice, docs[key].id)

    async def test_trash_lists_only_roots(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        assert [e.id for e in await tree.list_trash(alice)] == [docs["docs"].id]

    async def test_objects_kept_while_trashed(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        assert await _object_count(tree) == 2

    async def test_trash_twice_is_noop(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        result = await tree.trash(alice, [docs["a"].id])
        assert result.success

    async def test_frees_name_for_new_entry(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        again = await tree.upload(alice, "a.txt", b"new", docs["docs"].id, auto_rename=False)
        assert again.name == "a.txt"

    async def test_missing_entry_reported(self, tree, alice):
        result = await tree.trash(alice, ["missing"])
        assert result.failed[0].error_kind == "not_found"


# =========================================================================
# Restore
# =========================================================================


class TestRestore:
    async def test_restore_revives_subtree(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        result = await tree.restore(alice, [docs["docs"].id])
        assert result.success
        assert (await tree.get(alice, docs["b"].id)).parent_id == docs["sub"].id
        assert await tree.list_trash(alice) == []

    async def test_separately_trashed_child_stays_trashed(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        await tree.trash(alice, [docs["docs"].id])
        await tree.restore(alice, [docs["docs"].id])

        assert (await tree.get(alice, docs["sub"].id)).deleted_at is None
        a = await tree.get(alice, docs["a"].id, include_deleted=True)
        assert a.deleted_at is not None
        assert [e.id for e in await tree.list_trash(alice)] == [docs["a"].id]

    async def test_restore_to_root_when_parent_trashed(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        await tree.trash(alice, [docs["docs"].id])
        result = await tree.restore(alice, [docs["a"].id])

        restored = result.items[0].entry
        assert restored is not None
        assert restored.parent_id is None
        assert [e.name for e in await tree.list_children(alice)] == ["a.txt"]

    async def test_restore_child_of_trashed_batch(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        await tree.restore(alice, [docs["sub"].id])
        sub = await tree.get(alice, docs["sub"].id)
        assert sub.parent_id is None
        assert (await tree.get(alice, docs["b"].id)).parent_id == sub.id

    async def test_restore_disambiguates_name(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        await tree.upload(alice, "a.txt", b"replacement", docs["docs"].id)
        result = await tree.restore(alice, [docs["a"].id])
        restored = result.items[0].entry
        assert restored is not None
        assert restored.name == "a (1).txt"

    async def test_restore_live_entry_fails(self, tree, alice, docs):
        result = await tree.restore(alice, [docs["a"].id])
        assert result.failed[0].error_kind == "invariant_violation"

    async def test_download_after_restore(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        await tree.restore(alice, [docs["docs"].id])
        _info, stream = await tree.open_download(alice, docs["a"].id)
        assert b"".join([chunk async for chunk in stream]) == b"aaa"


# =========================================================================
# Permanent delete
# =========================================================================


class TestDeletePermanently:
    async def test_live_entry_rejected(self, tree, alice, docs):
        result = await tree.delete_permanently(alice, [docs["a"].id])
        assert not result.success
        assert result.failed[0].error_kind == "invariant_violation"
        assert await _object_count(tree) == 2

    async def test_purge_folder_releases_objects(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        result = await tree.delete_permanently(alice, [docs["docs"].id])
        assert result.success
        assert await _object_count(tree) == 0
        with pytest.raises(NotFoundError):
            await tree.get(alice, docs["b"].id, include_deleted=True)

    async def test_nothing_left_for_orphan_sweep(self, tree, alice, docs):
        await tree.trash(alice, [docs["docs"].id])
        await tree.delete_permanently(alice, [docs["docs"].id])
        stats = await OrphanSweeper(tree).run_once(datetime.now(UTC) + timedelta(days=1))
        assert stats.deleted == 0

    async def test_purge_frees_usage(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        assert (await tree.storage_usage(alice)).used == 5
        await tree.delete_permanently(alice, [docs["a"].id])
        assert (await tree.storage_usage(alice)).used == 2

    async def test_purge_removes_share(self, tree, alice, docs):
        token = await tree.share(alice, [docs["a"].id])
        await tree.trash(alice, [docs["a"].id])
        await tree.delete_permanently(alice, [docs["a"].id])
        with pytest.raises(NotFoundError):
            await tree.resolve_share(token)


# =========================================================================
# Empty trash
# =========================================================================


class TestEmptyTrash:
    async def test_empties_everything(self, tree, alice, docs):
        other = await tree.upload(alice, "loose.txt", b"x")
        await tree.trash(alice, [docs["docs"].id, other.id])

        result = await tree.empty_trash(alice)
        assert result.success
        assert len(result.items) == 2
        assert await tree.list_trash(alice) == []
        assert await _object_count(tree) == 0

    async def test_nested_trash_roots(self, tree, alice, docs):
        await tree.trash(alice, [docs["a"].id])
        await tree.trash(alice, [docs["docs"].id])

        result = await tree.empty_trash(alice)
        assert result.success
        assert await _object_count(tree) == 0

    async def test_live_entries_untouched(self, tree, alice, docs):
        await tree.trash(alice, [docs["b"].id])
        await tree.empty_trash(alice)
        assert (await tree.get(alice, docs["a"].id)).size == 3
        assert await _object_count(tree) == 1

    async def test_empty_trash_when_empty(self, tree, alice):
        result = await tree.empty_trash(alice)
        assert result.items == []
