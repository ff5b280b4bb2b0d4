"""
Tests for cursor pagination over stored memories.

Tests:
- Forward paging until exhaustion
- Backward paging (exact and legacy has_more)
- Cursor validation
- Totals and limit clamping
- Organization scoping of cursors
"""

import pytest

from memory_service.errors import NotFoundError, ValidationError
from memory_service.memory.storage import MemoryStore
from memory_service.memory.types import MemoryFilters


ORG1 = MemoryFilters(org_id="org1")


@pytest.mark.asyncio
class TestForwardPagination:
    """Paging towards older memories with starting_after."""

    async def test_three_pages_of_twenty_two(self, store, seed_memories):
        """22 rows at page size 10 come back as 10, 10, 2."""
        ids = await seed_memories(22)
        newest_first = list(reversed(ids))

        first = await store.get_by_filters(ORG1, limit=10)
        second = await store.get_by_filters(ORG1, limit=10, starting_after=first.data[-1].id)
        third = await store.get_by_filters(ORG1, limit=10, starting_after=second.data[-1].id)

        assert [len(p.data) for p in (first, second, third)] == [10, 10, 2]
        assert [p.has_more for p in (first, second, third)] == [True, True, False]

        listed = [r.id for p in (first, second, third) for r in p.data]
        assert listed == newest_first

    async def test_exact_multiple_ends_without_more(self, store, seed_memories):
        """A last page that is exactly full reports has_more=False."""
        await seed_memories(20)

        first = await store.get_by_filters(ORG1, limit=10)
        second = await store.get_by_filters(ORG1, limit=10, starting_after=first.data[-1].id)

        assert first.has_more is True
        assert len(second.data) == 10
        assert second.has_more is False

    async def test_ties_on_created_at_break_by_id(self, store, session_factory, embedder):
        """Rows sharing a timestamp are ordered by id descending, never skipped."""
        from datetime import datetime, timezone

        from memory_service.ai.embeddings import pack_embedding
        from memory_service.db.models import Memory

        moment = datetime(2024, 5, 1, tzinfo=timezone.utc)
        async with session_factory() as session:
            session.add_all([
                Memory(
                    id=f"tie-{i}",
                    embedding=pack_embedding(embedder.vector("tie")),
                    user_id="user1",
                    org_id="org1",
                    agent_id="",
                    memory_text=f"tie {i}",
                    created_at=moment,
                    updated_at=moment,
                )
                for i in range(5)
            ])
            await session.commit()

        seen = []
        cursor = None
        while True:
            page = await store.get_by_filters(ORG1, limit=2, starting_after=cursor)
            seen.extend(r.id for r in page.data)
            if not page.has_more:
                break
            cursor = page.data[-1].id

        assert seen == ["tie-4", "tie-3", "tie-2", "tie-1", "tie-0"]

    async def test_filters_narrow_the_listing(self, store, seed_memories):
        await seed_memories(3, user_id="user1", prefix="u1")
        await seed_memories(4, user_id="user2", prefix="u2")

        page = await store.get_by_filters(MemoryFilters(org_id="org1", user_id="user2"), limit=10)

        assert [r.user_id for r in page.data] == ["user2"] * 4
        assert page.has_more is False

    async def test_rows_have_no_embedding(self, store, seed_memories):
        await seed_memories(1)

        page = await store.get_by_filters(ORG1)

        assert "embedding" not in page.data[0].model_dump()


@pytest.mark.asyncio
class TestBackwardPagination:
    """Paging towards newer memories with ending_before."""

    async def test_backward_page_is_newest_first(self, store, seed_memories):
        """The returned page keeps created_at DESC order."""
        ids = await seed_memories(22)

        # Cursor at the oldest row: the 10 rows just newer than it
        page = await store.get_by_filters(ORG1, limit=10, ending_before=ids[0])

        assert [r.id for r in page.data] == list(reversed(ids[1:11]))

    async def test_backward_walk_reaches_the_top(self, store, seed_memories):
        """Walking back from the last forward page reproduces the earlier pages."""
        ids = await seed_memories(22)
        newest_first = list(reversed(ids))

        third = await store.get_by_filters(ORG1, limit=10, starting_after=newest_first[19])
        second = await store.get_by_filters(ORG1, limit=10, ending_before=third.data[0].id)
        first = await store.get_by_filters(ORG1, limit=10, ending_before=second.data[0].id)

        assert [r.id for r in second.data] == newest_first[10:20]
        assert [r.id for r in first.data] == newest_first[:10]
        assert second.has_more is True
        assert first.has_more is False

    async def test_backward_short_page(self, store, seed_memories):
        """Fewer newer rows than the limit returns them all without more."""
        ids = await seed_memories(5)

        page = await store.get_by_filters(ORG1, limit=10, ending_before=ids[2])

        assert [r.id for r in page.data] == [ids[4], ids[3]]
        assert page.has_more is False

    async def test_legacy_backward_has_more_is_always_true(
        self, session_factory, embedder, test_settings, seed_memories
    ):
        """Legacy mode reports has_more=True for every backward page."""
        legacy = test_settings.model_copy(update={"pagination_legacy_backward_has_more": True})
        store = MemoryStore(session_factory, embedder=embedder, settings=legacy)
        ids = await seed_memories(5)

        page = await store.get_by_filters(ORG1, limit=10, ending_before=ids[2])

        assert [r.id for r in page.data] == [ids[4], ids[3]]
        assert page.has_more is True

    async def test_legacy_mode_leaves_forward_exact(
        self, session_factory, embedder, test_settings, seed_memories
    ):
        legacy = test_settings.model_copy(update={"pagination_legacy_backward_has_more": True})
        store = MemoryStore(session_factory, embedder=embedder, settings=legacy)
        await seed_memories(3)

        page = await store.get_by_filters(ORG1, limit=10)

        assert page.has_more is False


@pytest.mark.asyncio
class TestCursorValidation:
    """Tests for cursor and limit handling."""

    async def test_both_cursors_rejected(self, store, seed_memories):
        ids = await seed_memories(3)

        with pytest.raises(ValidationError):
            await store.get_by_filters(ORG1, starting_after=ids[0], ending_before=ids[2])

    async def test_unknown_cursor(self, store, seed_memories):
        await seed_memories(3)

        with pytest.raises(NotFoundError, match="cursor record not found"):
            await store.get_by_filters(ORG1, starting_after="does-not-exist")

        with pytest.raises(NotFoundError):
            await store.get_by_filters(ORG1, ending_before="does-not-exist")

    async def test_cursor_from_another_org(self, store, seed_memories):
        """A cursor id only resolves inside the caller's organization."""
        await seed_memories(3, org_id="org1", prefix="one")
        other = await seed_memories(3, org_id="org2", prefix="two")

        with pytest.raises(NotFoundError):
            await store.get_by_filters(ORG1, starting_after=other[0])

    async def test_include_total_ignores_cursor(self, store, seed_memories):
        ids = await seed_memories(12)

        page = await store.get_by_filters(
            ORG1, limit=5, include_total=True, starting_after=ids[-1]
        )

        assert len(page.data) == 5
        assert page.total == 12

    async def test_total_omitted_by_default(self, store, seed_memories):
        await seed_memories(2)

        page = await store.get_by_filters(ORG1)

        assert page.total is None

    @pytest.mark.parametrize(
        "requested, expected",
        [(0, 1), (-3, 1), (7, 7), (500, 100), (None, 50)],
    )
    async def test_limit_is_clamped(self, store, seed_memories, requested, expected):
        await seed_memories(120)

        page = await store.get_by_filters(ORG1, limit=requested)

        assert len(page.data) == expected
        assert page.has_more is True
