"""Tests for NameResolver and the pure name helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tmacloud.fs.exceptions import InvariantViolationError, NameConflictError
from tmacloud.fs.resolver import NameResolver, disambiguate_name, validate_name
from tmacloud.models import EntryType, FileEntry


@pytest.fixture
def resolver() -> NameResolver:
    return NameResolver(FileEntry)


async def _add(session, name, entry_type=EntryType.FILE, parent_id=None, **fields) -> FileEntry:
    entry = FileEntry(owner_id="alice", name=name, type=entry_type, parent_id=parent_id, **fields)
    session.add(entry)
    await session.flush()
    return entry


# ---------------------------------------------------------------------------
# validate_name
# ---------------------------------------------------------------------------


class TestValidateName:
    def test_strips_whitespace(self):
        assert validate_name("  notes.md ") == "notes.md"

    @pytest.mark.parametrize("name", ["", "   ", ".", ".."])
    def test_rejects_empty_and_reserved(self, name):
        with pytest.raises(ValueError):
            validate_name(name)

    @pytest.mark.parametrize("name", ["a/b", "a\\b", "bad\x00name", "tab\tname"])
    def test_rejects_invalid_characters(self, name):
        with pytest.raises(ValueError, match="invalid characters"):
            validate_name(name)

    def test_rejects_long_names(self):
        with pytest.raises(ValueError, match="too long"):
            validate_name("x" * 256)

    def test_accepts_unicode(self):
        assert validate_name("résumé (final).pdf") == "résumé (final).pdf"


# ---------------------------------------------------------------------------
# disambiguate_name
# ---------------------------------------------------------------------------


class TestDisambiguateName:
    def test_file_keeps_extension(self):
        assert disambiguate_name("report.pdf", 2, EntryType.FILE) == "report (2).pdf"

    def test_file_without_extension(self):
        assert disambiguate_name("README", 1, EntryType.FILE) == "README (1)"

    def test_folder_ignores_dots(self):
        assert disambiguate_name("v1.2", 1, EntryType.FOLDER) == "v1.2 (1)"

    def test_dotfile(self):
        assert disambiguate_name(".env", 1, EntryType.FILE) == ".env (1)"


# ---------------------------------------------------------------------------
# resolve_name
# ---------------------------------------------------------------------------


class TestResolveName:
    async def test_free_name_returned(self, resolver, async_session):
        name = await resolver.resolve_name(
            async_session, "alice", None, "a.txt", EntryType.FILE, auto_rename=False
        )
        assert name == "a.txt"

    async def test_conflict_without_auto_rename(self, resolver, async_session):
        await _add(async_session, "a.txt")
        with pytest.raises(NameConflictError):
            await resolver.resolve_name(
                async_session, "alice", None, "a.txt", EntryType.FILE, auto_rename=False
            )

    async def test_auto_rename_picks_first_free(self, resolver, async_session):
        await _add(async_session, "a.txt")
        await _add(async_session, "a (1).txt")
        name = await resolver.resolve_name(
            async_session, "alice", None, "a.txt", EntryType.FILE, auto_rename=True
        )
        assert name == "a (2).txt"

    async def test_trashed_sibling_does_not_conflict(self, resolver, async_session):
        await _add(async_session, "a.txt", deleted_at=datetime.now(UTC))
        name = await resolver.resolve_name(
            async_session, "alice", None, "a.txt", EntryType.FILE, auto_rename=False
        )
        assert name == "a.txt"

    async def test_other_type_does_not_conflict(self, resolver, async_session):
        await _add(async_session, "docs", EntryType.FOLDER)
        assert await resolver.is_name_free(async_session, "alice", None, "docs", EntryType.FILE)

    async def test_exclude_self(self, resolver, async_session):
        entry = await _add(async_session, "a.txt")
        name = await resolver.resolve_name(
            async_session,
            "alice",
            None,
            "a.txt",
            EntryType.FILE,
            auto_rename=False,
            exclude_id=entry.id,
        )
        assert name == "a.txt"

    async def test_physical_exists_consulted(self, resolver, async_session):
        on_disk = {"a.txt", "a (1).txt"}

        async def exists(candidate: str) -> bool:
            return candidate in on_disk

        name = await resolver.resolve_name(
            async_session,
            "alice",
            None,
            "a.txt",
            EntryType.FILE,
            auto_rename=True,
            physical_exists=exists,
        )
        assert name == "a (2).txt"


# ---------------------------------------------------------------------------
# Ancestry
# ---------------------------------------------------------------------------


class TestAncestors:
    async def test_chain_nearest_first(self, resolver, async_session):
        a = await _add(async_session, "a", EntryType.FOLDER)
        b = await _add(async_session, "b", EntryType.FOLDER, parent_id=a.id)
        c = await _add(async_session, "c", EntryType.FOLDER, parent_id=b.id)
        assert await resolver.ancestors(async_session, "alice", c.id) == [b.id, a.id]

    async def test_root_has_no_ancestors(self, resolver, async_session):
        a = await _add(async_session, "a", EntryType.FOLDER)
        assert await resolver.ancestors(async_session, "alice", a.id) == []

    async def test_is_descendant_or_self(self, resolver, async_session):
        a = await _add(async_session, "a", EntryType.FOLDER)
        b = await _add(async_session, "b", EntryType.FOLDER, parent_id=a.id)
        assert await resolver.is_descendant_or_self(async_session, "alice", b.id, a.id)
        assert await resolver.is_descendant_or_self(async_session, "alice", a.id, a.id)
        assert not await resolver.is_descendant_or_self(async_session, "alice", a.id, b.id)

    async def test_corrupt_cycle_detected(self, resolver, async_session):
        a = await _add(async_session, "a", EntryType.FOLDER)
        b = await _add(async_session, "b", EntryType.FOLDER, parent_id=a.id)
        a.parent_id = b.id
        await async_session.flush()
        with pytest.raises(InvariantViolationError, match="Cycle"):
            await resolver.ancestors(async_session, "alice", b.id)
