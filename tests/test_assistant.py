"""Tests for the AssistantCore facade."""

import json

import pytest

from soulycore.interfaces import Contact, RunStatus
from soulycore.server.config import DatabaseConfig, GenerationConfig, SoulyCoreConfig
from soulycore.services.assistant import AssistantCore, create_assistant_core
from soulycore.testing import (
    BlockingGenerativeService,
    MockGenerativeService,
    finish,
    tool_call,
)

EXTRACTION = json.dumps({
    "entities": [{"name": "Grace Hopper", "type": "person", "details": "admiral"}],
    "knowledge": ["Grace Hopper popularized the term debugging."],
})


def make_core(generative, tiers, run_store, audit, background, **kwargs) -> AssistantCore:
    return AssistantCore(generative, tiers, run_store, audit, background, **kwargs)


@pytest.fixture
async def core(generative, tiers, run_store, audit, background):
    yield make_core(generative, tiers, run_store, audit, background)
    await background.drain()


# =============================================================================
# Conversation turns
# =============================================================================

class TestHandleTurn:

    async def test_persists_both_turns(self, core, generative, episodic, conversation):
        generative.queue("Hi! How can I help?")

        result = await core.handle_turn(conversation.id, "hello there")

        turns = await episodic.query(conversation_id=conversation.id)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "hello there"),
            ("model", "Hi! How can I help?"),
        ]
        assert result.model_turn.parent_turn_id == result.user_turn.id
        assert result.user_turn.token_count == 2
        assert result.model_turn.response_time_ms >= 0

    async def test_current_turn_not_repeated_in_history(self, core, generative, conversation):
        generative.queue("reply")

        await core.handle_turn(conversation.id, "only message")

        history = generative.calls[0].history
        assert [m.content for m in history] == ["only message"]

    async def test_extraction_runs_in_background(
        self, core, generative, background, structured, conversation
    ):
        generative.queue("She was an admiral.", EXTRACTION)

        result = await core.handle_turn(conversation.id, "who was grace hopper?")
        await background.drain()

        entities = await structured.query(type="entity", name="Grace")
        assert [e.name for e in entities] == ["Grace Hopper"]
        extraction_prompt = generative.calls[1].prompt
        assert "user: who was grace hopper?" in extraction_prompt
        assert "model: She was an admiral." in extraction_prompt
        logs = await core.tiers.get("document").query(type="extraction_log")
        assert logs[0].data["message_id"] == result.model_turn.id

    async def test_extraction_disabled_per_conversation(
        self, core, generative, background, episodic
    ):
        conversation = episodic.create_conversation(enable_memory_extraction=False)
        generative.queue("ok")

        await core.handle_turn(conversation.id, "remember nothing")
        await background.drain()

        assert len(generative.calls) == 1

    async def test_extraction_failure_does_not_affect_reply(
        self, core, generative, background, conversation
    ):
        generative.queue("fine reply", "garbage")

        result = await core.handle_turn(conversation.id, "hello")
        await background.drain()

        assert result.model_turn.content == "fine reply"

    async def test_mentioned_contacts_reach_prompt(self, core, generative, structured, conversation):
        await structured.store(type="contact", data={"name": "Jane Doe", "phone": "555-0100"})
        generative.queue("Calling Jane.")

        result = await core.handle_turn(
            conversation.id, "call jane", mentioned_contacts=[Contact(name="Jane")]
        )

        assert "Jane Doe" in result.assembly.prompt

    async def test_unknown_conversation(self, core):
        with pytest.raises(KeyError):
            await core.handle_turn("missing", "hello")


class TestSummarizeTurn:

    async def test_summary_stored_in_semantic_memory(
        self, core, generative, episodic, semantic, conversation
    ):
        turn = await episodic.store(
            conversation_id=conversation.id, role="user", content="long text"
        )
        generative.queue("A short summary.")

        await core.summarize_turn(turn)

        matches = await semantic.query(query_text="A short summary.", top_k=1)
        assert matches[0].metadata["type"] == "turn_summary"
        assert matches[0].metadata["conversation_id"] == conversation.id
        assert matches[0].metadata["message_id"] == turn.id

    async def test_long_turns_summarized_when_wired_from_config(self):
        config = SoulyCoreConfig(
            generation=GenerationConfig(provider="mock"),
            db=DatabaseConfig(path=":memory:"),
        )
        generative = MockGenerativeService(["A summary of a long message."])
        core = create_assistant_core(config, generative=generative)
        conversation = core.create_conversation(title="Long")

        await core.tiers.episodic.store(
            conversation_id=conversation.id,
            role="user",
            content=" ".join(["word"] * 600),
        )
        await core.background.drain()

        matches = await core.tiers.get("semantic").query(
            query_text="A summary of a long message.", top_k=1
        )
        assert matches[0].metadata["type"] == "turn_summary"
        await core.close()


# =============================================================================
# Agent runs
# =============================================================================

class TestAgentRuns:

    async def test_plan(self, core, generative):
        generative.queue('{"phases": ["Look up", "Write up"]}')
        assert await core.plan("Research otters") == ["Look up", "Write up"]

    async def test_start_run_executes_in_background(self, core, generative, background):
        generative.queue(tool_call("calculator", operation="add", a=1, b=1), finish("2"))

        run = core.start_run("Add numbers", ["Compute"])
        assert core.get_run(run.id).status == RunStatus.RUNNING

        await background.drain()

        stored = core.get_run(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.phases[0].steps[0].observation == "The result is 2."
        assert core.cancel_run(run.id) is False

    async def test_cancel_run(self, tiers, run_store, audit, background):
        generative = BlockingGenerativeService([tool_call("web_search", query="x")])
        core = make_core(generative, tiers, run_store, audit, background)

        run = core.start_run("Goal", ["Search"])
        await generative.entered.wait()
        assert core.cancel_run(run.id) is True
        generative.gate.set()
        await background.drain()

        stored = core.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error == "Run cancelled"

    async def test_list_experiences(self, core, generative, background):
        generative.queue(
            tool_call("web_search", query="otters"),
            finish("Otters are cute"),
            json.dumps({"goal_template": "Research {animal}", "trigger_keywords": ["research", "animal"]}),
        )
        core.start_run("Research otters", ["Search"])
        await background.drain()

        assert len(core.list_experiences()) == 1
        assert len(core.list_experiences(query="research whales")) == 1
        assert core.list_experiences(query="bake bread") == []

    async def test_unknown_run(self, core):
        assert core.get_run("missing") is None
        assert core.cancel_run("missing") is False


# =============================================================================
# Entity links
# =============================================================================

class TestEntityLinks:

    async def test_propose_link_unknown_conversation(self, core):
        with pytest.raises(KeyError):
            await core.propose_link("missing")

    async def test_propose_link_without_mentions(self, core, conversation):
        assert await core.propose_link(conversation.id) is None

    async def test_accept_link(self, core, structured):
        ada = await structured.store(type="entity", data={"name": "Ada", "type": "person"})
        engine = await structured.store(type="entity", data={"name": "Engine", "type": "machine"})

        relationship = await core.accept_link(ada.id, "Designed Programs For", engine.id)

        assert relationship.predicate == "designed_programs_for"
        assert len(await structured.query(type="relationship", id=ada.id)) == 1
