"""Tests for the abbreviation vector index."""

from datetime import UTC, datetime, timedelta

import pytest

from conversation_memory.id_utils import new_conversation_id
from conversation_memory.index import IndexStore, VectorIndex
from conversation_memory.index.vector import DIMENSIONS_KEY, MODEL_KEY
from conversation_memory.models import AbbreviationRecord, Conversation, SearchFilters

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
async def store(tmp_path):
    store = await IndexStore.open(tmp_path / "index.db")
    yield store
    await store.close()


@pytest.fixture
async def vectors(store):
    index = VectorIndex(store)
    await index.ensure_model("mock", 3)
    return index


async def add(store: IndexStore, vector: list[float], channel: str = "web", model: str = "mock", turns: int = 1) -> str:
    conversation_id = new_conversation_id()
    await store.upsert_conversation(
        Conversation(
            id=conversation_id,
            channel=channel,
            created=BASE,
            updated=BASE + timedelta(minutes=1),
            turn_count=turns,
        )
    )
    await store.save_abbreviation(
        conversation_id,
        f"abbreviation of {conversation_id}",
        AbbreviationRecord(
            conversation_id=conversation_id,
            text=f"abbreviation of {conversation_id}",
            vector=vector,
            embedding_model=model,
            generated_at=BASE,
        ),
    )
    return conversation_id


class TestModelVersioning:
    @pytest.mark.asyncio
    async def test_first_pin_records_model(self, store):
        index = VectorIndex(store)
        assert await index.ensure_model("mock", 3) is False
        assert await store.get_meta(MODEL_KEY) == "mock"
        assert await store.get_meta(DIMENSIONS_KEY) == "3"

    @pytest.mark.asyncio
    async def test_same_model_keeps_vectors(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0])
        assert await VectorIndex(store).ensure_model("mock", 3) is False
        assert await vectors.count() == 1

    @pytest.mark.asyncio
    async def test_model_change_drops_and_flags(self, store, vectors):
        cid = await add(store, [1.0, 0.0, 0.0])
        resets = []

        index = VectorIndex(store)
        index.add_reset_hook(lambda: resets.append(True))
        assert await index.ensure_model("other-model", 3) is True

        assert await index.count() == 0
        assert resets == [True]
        conversation = await store.get_conversation(cid)
        assert conversation.needs_abbreviation is True
        assert await store.get_meta(MODEL_KEY) == "other-model"

    @pytest.mark.asyncio
    async def test_dimension_change_drops(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0])
        assert await VectorIndex(store).ensure_model("mock", 8) is True


class TestStorage:
    @pytest.mark.asyncio
    async def test_save_clears_flag_and_sets_text(self, store, vectors):
        cid = await add(store, [0.0, 1.0, 0.0])
        conversation = await store.get_conversation(cid)
        assert conversation.needs_abbreviation is False
        assert conversation.abbreviation == f"abbreviation of {cid}"
        assert await vectors.has_vector(cid)

    @pytest.mark.asyncio
    async def test_text_without_record_stays_flagged(self, store, vectors):
        cid = new_conversation_id()
        await store.upsert_conversation(
            Conversation(id=cid, channel="web", created=BASE, updated=BASE, turn_count=2)
        )
        await store.save_abbreviation(cid, "text only", None)

        conversation = await store.get_conversation(cid)
        assert conversation.abbreviation == "text only"
        assert conversation.needs_abbreviation is True
        assert not await vectors.has_vector(cid)
        assert cid in await store.conversations_needing_abbreviation()

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, store, vectors):
        cid = await add(store, [1.0, 0.0, 0.0])
        await vectors.upsert(
            AbbreviationRecord(
                conversation_id=cid,
                text="regenerated",
                vector=[0.0, 0.0, 1.0],
                embedding_model="mock",
                generated_at=BASE,
            )
        )
        assert await vectors.count() == 1
        hits = await vectors.search([0.0, 0.0, 1.0])
        assert hits[0].text == "regenerated"


class TestSearch:
    @pytest.mark.asyncio
    async def test_ranked_by_cosine(self, store, vectors):
        close = await add(store, [1.0, 0.1, 0.0])
        far = await add(store, [0.2, 1.0, 0.0])
        orthogonal = await add(store, [0.0, 0.0, 1.0])

        hits = await vectors.search([1.0, 0.0, 0.0], min_similarity=0.0)
        assert [h.conversation_id for h in hits] == [close, far]
        assert orthogonal not in {h.conversation_id for h in hits}
        assert hits[0].similarity == pytest.approx(1.0 / (1.01**0.5))

    @pytest.mark.asyncio
    async def test_without_threshold_returns_everything(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0])
        await add(store, [0.0, 1.0, 0.0])
        assert len(await vectors.search([1.0, 0.0, 0.0])) == 2

    @pytest.mark.asyncio
    async def test_other_model_ignored(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0], model="legacy")
        assert await vectors.search([1.0, 0.0, 0.0]) == []

    @pytest.mark.asyncio
    async def test_dimension_mismatch_ignored(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0])
        assert await vectors.search([1.0, 0.0]) == []

    @pytest.mark.asyncio
    async def test_zero_query_vector(self, store, vectors):
        await add(store, [1.0, 0.0, 0.0])
        assert await vectors.search([0.0, 0.0, 0.0]) == []

    @pytest.mark.asyncio
    async def test_channel_filter_and_limit(self, store, vectors):
        for _ in range(3):
            await add(store, [1.0, 0.0, 0.0], channel="web")
        telegram = await add(store, [1.0, 0.0, 0.0], channel="telegram")

        hits = await vectors.search([1.0, 0.0, 0.0], SearchFilters(channel="telegram"))
        assert [h.conversation_id for h in hits] == [telegram]
        assert len(await vectors.search([1.0, 0.0, 0.0], limit=2)) == 2
