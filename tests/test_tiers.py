"""Tests for the six memory tiers and the tier registry."""

import asyncio

import pytest

from soulycore.interfaces import Conversation, TierError
from soulycore.server.config import DatabaseConfig, TierConfig
from soulycore.services.background import BackgroundTaskSupervisor
from soulycore.services.embeddings import HashEmbeddingService
from soulycore.services.tiers import (
    EpisodicMemoryTier,
    SemanticMemoryTier,
    TierRegistry,
    WorkingMemoryTier,
    build_tier_registry,
)
from soulycore.testing import MockEmbeddingService


def words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


# =============================================================================
# Episodic
# =============================================================================

class TestEpisodicTier:

    async def test_turns_come_back_oldest_first(self, episodic, conversation):
        for i in range(5):
            await episodic.store(conversation_id=conversation.id, role="user", content=f"m{i}")

        turns = await episodic.query(conversation_id=conversation.id, limit=3)

        assert [t.content for t in turns] == ["m2", "m3", "m4"]

    async def test_store_touches_conversation(self, episodic, conversation):
        before = episodic.get_conversation(conversation.id).last_updated_at
        await asyncio.sleep(0.001)
        await episodic.store(conversation_id=conversation.id, role="user", content="hi")

        assert episodic.get_conversation(conversation.id).last_updated_at > before

    async def test_unknown_conversation_rejected(self, episodic):
        with pytest.raises(TierError, match="Unknown conversation"):
            await episodic.store(conversation_id="missing", role="user", content="hi")

    async def test_invalid_role_rejected(self, episodic, conversation):
        with pytest.raises(TierError):
            await episodic.store(conversation_id=conversation.id, role="system", content="x")

    async def test_edit_keeps_order(self, episodic, conversation):
        first = await episodic.store(conversation_id=conversation.id, role="user", content="one")
        await episodic.store(conversation_id=conversation.id, role="model", content="two")

        updated = await episodic.update_turn(first.id, content="uno", is_bookmarked=True, tags=["x"])
        turns = await episodic.query(conversation_id=conversation.id)

        assert updated.is_bookmarked is True
        assert updated.tags == ["x"]
        assert [t.content for t in turns] == ["uno", "two"]

    async def test_delete_turn(self, episodic, conversation):
        turn = await episodic.store(conversation_id=conversation.id, role="user", content="bye")
        assert await episodic.delete(turn.id) is True
        assert await episodic.query(conversation_id=conversation.id) == []


class TestEpisodicSummarization:
    """Long turns are summarized in the background."""

    @pytest.fixture
    def summarized(self):
        seen = []

        async def summarizer(turn):
            seen.append(turn.id)

        background = BackgroundTaskSupervisor()
        tier = EpisodicMemoryTier(background=background, summarizer=summarizer)
        conversation = tier.create_conversation(Conversation())
        yield tier, background, conversation, seen
        tier.close()

    async def test_501_words_triggers_summary(self, summarized):
        tier, background, conversation, seen = summarized

        turn = await tier.store(conversation_id=conversation.id, role="user", content=words(501))
        await background.drain()

        assert seen == [turn.id]

    async def test_500_words_does_not(self, summarized):
        tier, background, conversation, seen = summarized

        await tier.store(conversation_id=conversation.id, role="user", content=words(500))
        await background.drain()

        assert seen == []

    async def test_summarizer_failure_does_not_affect_store(self):
        async def broken(turn):
            raise RuntimeError("summary backend down")

        background = BackgroundTaskSupervisor()
        tier = EpisodicMemoryTier(background=background, summarizer=broken)
        conversation = tier.create_conversation(Conversation())

        turn = await tier.store(conversation_id=conversation.id, role="user", content=words(600))
        await background.drain()

        assert turn.content == words(600)
        assert background.failures == 1
        assert len(await tier.query(conversation_id=conversation.id)) == 1
        tier.close()


# =============================================================================
# Semantic
# =============================================================================

class TestSemanticTier:

    async def test_exact_text_ranks_first(self, semantic):
        await semantic.store(text="The sky is blue")
        await semantic.store(text="Cats chase mice")
        await semantic.store(text="Rust is a systems language")

        matches = await semantic.query(query_text="Cats chase mice", top_k=2)

        assert len(matches) == 2
        assert matches[0].text == "Cats chase mice"
        assert matches[0].score == pytest.approx(1.0)
        assert matches[0].score >= matches[1].score

    async def test_metadata_keeps_text(self, semantic):
        record = await semantic.store(text="fact", metadata={"type": "fact"})
        assert record.metadata == {"type": "fact", "text": "fact"}

    async def test_filter_restricts_results(self, semantic):
        await semantic.store(text="alpha", metadata={"conversation_id": "c1"})
        await semantic.store(text="beta", metadata={"conversation_id": "c2"})

        matches = await semantic.query(query_text="alpha", top_k=5, filter={"conversation_id": "c2"})

        assert [m.text for m in matches] == ["beta"]

    async def test_upsert_by_id(self, semantic):
        await semantic.store(text="old", id="k1")
        await semantic.store(text="new", id="k1")

        assert await semantic.count() == 1
        matches = await semantic.query(query_text="new", top_k=1)
        assert matches[0].text == "new"

    async def test_delete(self, semantic):
        record = await semantic.store(text="gone soon")
        assert await semantic.delete(record.id) is True
        assert await semantic.count() == 0

    async def test_embedding_failure_propagates(self):
        tier = SemanticMemoryTier(MockEmbeddingService(fail=True))
        with pytest.raises(RuntimeError):
            await tier.query(query_text="anything")


# =============================================================================
# Structured
# =============================================================================

class TestStructuredTier:

    async def test_entity_upsert_keeps_single_row(self, structured):
        """Same (name, type) stored twice leaves one row with the latest description."""
        first = await structured.store(
            type="entity", data={"name": "Ada", "type": "person", "description": "mathematician"}
        )
        second = await structured.store(
            type="entity", data={"name": "Ada", "type": "person", "description": "first programmer"}
        )

        entities = await structured.query(type="entity", name="Ada")

        assert len(entities) == 1
        assert entities[0].description == "first programmer"
        assert second.id == first.id

    async def test_same_name_different_type_is_distinct(self, structured):
        await structured.store(type="entity", data={"name": "Mercury", "type": "planet"})
        await structured.store(type="entity", data={"name": "Mercury", "type": "element"})

        assert len(await structured.query(type="entity", name="Mercury")) == 2

    async def test_entity_store_with_same_id_renames(self, structured):
        await structured.store(type="entity", data={"id": "e1", "name": "Ada", "type": "person"})
        renamed = await structured.store(
            type="entity",
            data={"id": "e1", "name": "Ada Lovelace", "type": "person", "description": "countess"},
        )

        entities = await structured.query(type="entity")

        assert renamed.id == "e1"
        assert [(e.id, e.name, e.description) for e in entities] == [("e1", "Ada Lovelace", "countess")]

    async def test_contact_store_with_same_id_updates_email(self, structured):
        await structured.store(type="contact", data={"id": "c1", "name": "Jane", "email": "old@x.io"})
        await structured.store(type="contact", data={"id": "c1", "name": "Jane", "email": "new@x.io"})

        contacts = await structured.query(type="contact", id="c1")

        assert len(await structured.query(type="contact")) == 1
        assert contacts[0].email == "new@x.io"

    async def test_store_by_id_colliding_with_other_record_rejected(self, structured):
        await structured.store(type="entity", data={"id": "e1", "name": "Ada", "type": "person"})
        await structured.store(type="entity", data={"id": "e2", "name": "Grace", "type": "person"})

        with pytest.raises(TierError):
            await structured.store(type="entity", data={"id": "e2", "name": "Ada", "type": "person"})

        names = sorted(e.name for e in await structured.query(type="entity"))
        assert names == ["Ada", "Grace"]

    async def test_contact_lookup_is_fuzzy(self, structured):
        await structured.store(type="contact", data={"name": "Jane Doe", "email": "jane@x.io"})
        await structured.store(type="contact", data={"name": "John Roe"})

        contacts = await structured.query(type="contact", name="Jane")

        assert [c.name for c in contacts] == ["Jane Doe"]
        assert contacts[0].email == "jane@x.io"

    async def test_relationship_between_entities(self, structured):
        ada = await structured.store(type="entity", data={"name": "Ada", "type": "person"})
        engine = await structured.store(type="entity", data={"name": "Engine", "type": "machine"})

        await structured.store(
            type="relationship",
            data={"source_id": ada.id, "predicate": "programmed", "target_id": engine.id},
        )
        relationships = await structured.query(type="relationship", id=ada.id)

        assert len(relationships) == 1
        assert relationships[0].predicate == "programmed"

    async def test_missing_fields_rejected(self, structured):
        with pytest.raises(TierError):
            await structured.store(type="entity", data={"name": "NoType"})
        with pytest.raises(TierError):
            await structured.store(type="widget", data={})

    async def test_delete_entity(self, structured):
        entity = await structured.store(type="entity", data={"name": "Tmp", "type": "x"})
        assert await structured.delete(entity.id, type="entity") is True
        assert await structured.query(type="entity") == []


# =============================================================================
# Graph
# =============================================================================

class TestGraphTier:

    async def test_query_renders_both_directions(self, graph):
        await graph.store(subject="Ada", predicate="worked_with", object="Babbage")
        await graph.store(subject="Babbage", predicate="designed", object="Engine")

        facts = await graph.query(entity_name="Babbage")

        assert facts == ["Ada worked with Babbage", "Babbage designed Engine"]

    async def test_nodes_are_shared(self, graph):
        await graph.store(subject="Ada", predicate="knows", object="Babbage")
        await graph.store(subject="Ada", predicate="wrote", object="Notes")

        assert len(graph.edges_for("Ada")) == 2

    async def test_unknown_entity_returns_empty(self, graph):
        assert await graph.query(entity_name="Nobody") == []

    async def test_blank_fact_rejected(self, graph):
        with pytest.raises(TierError):
            await graph.store(subject=" ", predicate="is", object="x")


# =============================================================================
# Document
# =============================================================================

class TestDocumentTier:

    async def test_newest_first_and_type_filter(self, document):
        await document.store(data={"n": 1}, type="note")
        await document.store(data={"n": 2}, type="log")
        await document.store(data={"n": 3}, type="note")

        notes = await document.query(type="note")
        everything = await document.query(limit=2)

        assert [d.data["n"] for d in notes] == [3, 1]
        assert [d.data["n"] for d in everything] == [3, 2]

    async def test_default_type(self, document):
        record = await document.store(data={"a": 1})
        assert record.doc_type == "generic"


# =============================================================================
# Working
# =============================================================================

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestWorkingTier:

    async def test_value_expires(self):
        clock = FakeClock()
        tier = WorkingMemoryTier(clock=clock)

        await tier.store(session_id="s1", data={"step": 1}, ttl=10)
        assert await tier.query(session_id="s1") == {"step": 1}

        clock.now += 10
        assert await tier.query(session_id="s1") is None

    async def test_clear_expired(self):
        clock = FakeClock()
        tier = WorkingMemoryTier(clock=clock)
        await tier.store(session_id="short", data=1, ttl=5)
        await tier.store(session_id="long", data=2, ttl=50)

        clock.now += 10

        assert await tier.clear_expired() == 1
        assert await tier.clear_expired() == 0
        assert await tier.query(session_id="long") == 2

    async def test_store_sweeps_expired_entries(self):
        clock = FakeClock()
        tier = WorkingMemoryTier(clock=clock)
        await tier.store(session_id="old", data=1, ttl=5)

        clock.now += 10
        await tier.store(session_id="new", data=2, ttl=5)

        assert await tier.clear_expired() == 0
        assert await tier.query(session_id="new") == 2

    async def test_keys_are_session_scoped(self, working):
        await working.store(session_id="a", data=1)
        await working.store(session_id="b", data=2)

        assert await working.query(session_id="a") == 1
        assert WorkingMemoryTier.key_for("a") == "session:a"

    async def test_non_positive_ttl_rejected(self, working):
        with pytest.raises(ValueError):
            await working.store(session_id="a", data=1, ttl=0)

    async def test_delete(self, working):
        await working.store(session_id="a", data=1)
        assert await working.delete("a") is True
        assert await working.query(session_id="a") is None


# =============================================================================
# Registry
# =============================================================================

class TestTierRegistry:

    def test_build_from_default_config(self):
        registry = build_tier_registry(
            TierConfig().as_dict(),
            DatabaseConfig(path=":memory:"),
            HashEmbeddingService(),
            BackgroundTaskSupervisor(),
        )

        assert sorted(registry) == sorted(
            ["episodic", "semantic", "structured", "graph", "document", "working"]
        )
        assert isinstance(registry.episodic, EpisodicMemoryTier)
        registry.close_all()

    def test_unknown_tier_name_rejected(self, working):
        with pytest.raises(TierError):
            TierRegistry({"cache": working})

    def test_require_missing_tier(self):
        with pytest.raises(TierError, match="not configured"):
            TierRegistry().require("semantic")

    def test_delete_support_is_advertised(self, working, semantic):
        assert working.supports_delete
        assert semantic.supports_delete
