"""
End-to-end behavior of the memory service.

Covers the guarantees callers rely on: reads see every appended turn,
idle conversations are abbreviated once, search survives a broken
embedder, ranking follows content, manual titles stick, and corrupt
transcript lines are skipped.
"""

import asyncio
import logging

import pytest
from conftest import FailingEmbeddingProvider, JsonSummarizer, MockEmbeddingProvider, add_exchange

from conversation_memory.models import EventType, TranscriptEvent


async def abbreviation_count(memory, conversation_id):
    lines = await memory.log.read_lines(conversation_id)
    return sum(
        1 for line in lines if isinstance(line, TranscriptEvent) and line.event is EventType.ABBREVIATION
    )


class TestAppendThenRead:
    @pytest.mark.asyncio
    async def test_hydrate_returns_appended_turns_in_order(self, memory):
        conversation = await memory.create_conversation("web")
        sequence = [
            ("user", "Is the server up?"),
            ("assistant", "Yes."),
            ("user", "And the database?"),
            ("user", "Also the cache, please."),
            ("assistant", "Both are healthy."),
            ("assistant", "Anything else?"),
        ]
        for role, content in sequence:
            await memory.append_turn(conversation.id, role, content)

        context = await memory.hydrate_context(conversation.id, max_turns=100)

        assert [(t.role.value, t.content) for t in context.turns] == sequence


class TestIdleTriggersOnce:
    @pytest.mark.asyncio
    async def test_one_abbreviation_per_idle_period(self, memory_factory, config):
        config.idle_timeout_seconds = 0.05
        summarizer = JsonSummarizer()
        memory = await memory_factory(summarizer=summarizer, embedding_provider=MockEmbeddingProvider())
        conversation = await memory.create_conversation("web")
        await add_exchange(memory, conversation.id, "Server status?", "All green")

        await asyncio.sleep(0.3)
        await memory.pipeline.join()

        assert await memory.lifecycle.on_idle(conversation.id) is False
        assert await memory.switch_away(conversation.id) is False
        await memory.pipeline.join()

        assert await abbreviation_count(memory, conversation.id) == 1
        assert summarizer.calls == 1

    @pytest.mark.asyncio
    async def test_new_activity_allows_another_pass(self, memory_factory, config):
        config.idle_timeout_seconds = 0.05
        memory = await memory_factory(summarizer=JsonSummarizer(), embedding_provider=MockEmbeddingProvider())
        conversation = await memory.create_conversation("web")
        await add_exchange(memory, conversation.id, "Server status?", "All green")
        await asyncio.sleep(0.3)
        await memory.pipeline.join()

        await add_exchange(memory, conversation.id, "Disk usage?", "At 40%")
        await asyncio.sleep(0.3)
        await memory.pipeline.join()

        assert await abbreviation_count(memory, conversation.id) == 2


class TestGracefulDegradation:
    @pytest.mark.asyncio
    async def test_search_with_embedder_always_failing(self, memory_factory):
        memory = await memory_factory(
            summarizer=JsonSummarizer(), embedding_provider=FailingEmbeddingProvider()
        )
        conversation = await memory.create_conversation("web")
        await add_exchange(memory, conversation.id, "Server status?", "All green")
        await memory.switch_away(conversation.id)
        await memory.pipeline.join()

        matches = await memory.search("server")

        assert [m.conversation_id for m in matches] == [conversation.id]
        assert matches[0].sources == ["keyword"]

    @pytest.mark.asyncio
    async def test_query_embedding_failure_with_stored_vectors(self, memory):
        hello = await memory.create_conversation("web")
        status = await memory.create_conversation("web")
        await add_exchange(memory, hello.id, "Hello", "Hi there")
        await add_exchange(memory, status.id, "Server status?", "All green")
        for conversation_id in (hello.id, status.id):
            await memory.switch_away(conversation_id)
        await memory.pipeline.join()

        broken = FailingEmbeddingProvider()
        memory.fusion.embedder = broken
        matches = await memory.search("server")

        assert broken.calls == 1
        assert [m.conversation_id for m in matches] == [status.id]
        assert matches[0].sources == ["keyword"]


class TestRanking:
    @pytest.mark.asyncio
    async def test_content_match_ranks_first(self, memory):
        a = await memory.create_conversation("web")
        await add_exchange(memory, a.id, "Hello", "Hi there")
        b = await memory.create_conversation("web")
        await add_exchange(memory, b.id, "Server status?", "All green")
        await memory.switch_away(a.id)
        await memory.switch_away(b.id)
        await memory.pipeline.join()

        matches = await memory.search("server")

        assert matches[0].conversation_id == b.id
        assert "keyword" in matches[0].sources
        assert "semantic" in matches[0].sources


class TestManualRenameProtection:
    @pytest.mark.asyncio
    async def test_idle_naming_does_not_override_manual_title(self, memory):
        conversation = await memory.create_conversation("web")
        await add_exchange(memory, conversation.id, "Server status?", "All green")
        await memory.rename(conversation.id, "Ops Channel")

        await memory.switch_away(conversation.id)
        memory.pipeline.enqueue_naming(conversation.id)
        await memory.pipeline.join()

        stored = await memory.get_conversation(conversation.id)
        assert stored.title == "Ops Channel"
        assert stored.manually_named is True
        assert stored.abbreviation is not None

    @pytest.mark.asyncio
    async def test_automatic_title_write_is_refused(self, memory):
        conversation = await memory.create_conversation("web")
        await memory.rename(conversation.id, "Ops Channel")

        written = await memory.store.set_title(
            conversation.id, "quiet-server-vigil", [], manual=False, at_turn=0
        )

        assert written is False
        assert (await memory.get_conversation(conversation.id)).title == "Ops Channel"


class TestCorruptLineRecovery:
    @pytest.mark.asyncio
    async def test_malformed_line_between_turns(self, memory, caplog):
        conversation = await memory.create_conversation("web")
        await memory.append_turn(conversation.id, "user", "Server status?")
        path = memory.log.path_for(conversation.id)
        with open(path, "a", encoding="utf-8") as f:
            f.write('{"type": "turn", "role": "user", "content": \n')
        await memory.append_turn(conversation.id, "assistant", "All green")

        with caplog.at_level(logging.WARNING, logger="conversation_memory.transcript.log"):
            turns = await memory.fetch_turns(conversation.id)

        assert [t.content for t in turns] == ["Server status?", "All green"]
        warnings = [
            r
            for r in caplog.records
            if r.name == "conversation_memory.transcript.log" and r.levelno == logging.WARNING
        ]
        assert len(warnings) == 1
