"""Tests for the autonomous agent engine."""

import asyncio

import pytest

from soulycore.agents.engine import (
    AGENT_SYSTEM_INSTRUCTION,
    AutonomousAgentEngine,
    CancellationToken,
    MAX_STEPS_PER_PHASE,
    format_step_history,
)
from soulycore.interfaces import (
    GenerationResult,
    GenerativeServiceError,
    PhaseStatus,
    RunStatus,
    StepStatus,
    ToolHostError,
)
from soulycore.pipelines.consolidation import ExperienceConsolidationPipeline
from soulycore.services.background import BackgroundTaskSupervisor
from soulycore.services.tools import ToolExecutor, ToolRegistry, register_builtin_tools
from soulycore.testing import (
    BlockingGenerativeService,
    MockGenerativeService,
    MockToolExecutor,
    finish,
    tool_call,
)


@pytest.fixture
def tools():
    return MockToolExecutor({"search": "found it", "calculator": "The result is 4."})


def make_engine(generative, tools, run_store, **kwargs) -> AutonomousAgentEngine:
    return AutonomousAgentEngine(generative, tools, run_store, **kwargs)


# =============================================================================
# Step loop
# =============================================================================

class TestStepLoop:

    async def test_single_phase_finishes_after_tool_steps(self, tools, run_store):
        generative = MockGenerativeService([
            tool_call("search", thought="Look it up", query="python"),
            tool_call("calculator", operation="add", a=2, b=2),
            finish("Python is popular; 2+2=4"),
        ])
        engine = make_engine(generative, tools, run_store)

        run = await engine.run("Research python", ["Find facts"])

        assert run.status == RunStatus.COMPLETED
        phase = run.phases[0]
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.result == "Python is popular; 2+2=4"
        assert [s.order for s in phase.steps] == [1, 2]
        assert [s.action for s in phase.steps] == ["search", "calculator"]
        assert phase.steps[0].thought == "Look it up"
        assert phase.steps[0].observation == "found it"
        assert all(s.status == StepStatus.COMPLETED for s in phase.steps)
        assert tools.calls == [
            ("search", {"query": "python"}),
            ("calculator", {"operation": "add", "a": 2, "b": 2}),
        ]

    async def test_prompt_carries_goal_phase_and_history(self, tools, run_store):
        generative = MockGenerativeService([
            tool_call("search", query="x"),
            finish("done"),
        ])
        engine = make_engine(generative, tools, run_store)

        await engine.run("Overall goal text", ["Phase goal text"])

        first, second = generative.calls
        assert first.system_instruction == AGENT_SYSTEM_INSTRUCTION
        assert "Overall goal: Overall goal text" in first.prompt
        assert "Current phase goal: Phase goal text" in first.prompt
        assert "None yet." in first.prompt
        assert "Observation: found it" in second.prompt
        assert "finish" in first.tool_names
        assert "search" in first.tool_names

    async def test_immediate_finish_records_no_steps(self, tools, run_store):
        engine = make_engine(MockGenerativeService([finish("nothing to do")]), tools, run_store)

        run = await engine.run("Goal", ["Phase"])

        assert run.status == RunStatus.COMPLETED
        assert run.phases[0].steps == []
        assert run.phases[0].result == "nothing to do"

    async def test_plain_text_reply_finishes_phase(self, tools, run_store):
        engine = make_engine(
            MockGenerativeService([GenerationResult(text="All done here.")]), tools, run_store
        )

        run = await engine.run("Goal", ["Phase"])

        assert run.phases[0].result == "All done here."

    async def test_empty_reply_fails_run(self, tools, run_store):
        engine = make_engine(MockGenerativeService([GenerationResult()]), tools, run_store)

        run = await engine.run("Goal", ["Phase"])

        assert run.status == RunStatus.FAILED
        assert "neither text nor a tool call" in run.error

    async def test_step_budget_exhaustion_fails_run(self, tools, run_store):
        generative = MockGenerativeService(default_reply=tool_call("search", query="again"))
        engine = make_engine(generative, tools, run_store, max_steps=3)

        run = await engine.run("Goal", ["Loop forever"])

        assert run.status == RunStatus.FAILED
        assert run.error == "Phase 1 exceeded maximum steps (3)"
        assert run.phases[0].status == PhaseStatus.FAILED
        assert [s.order for s in run.phases[0].steps] == [1, 2, 3]

    async def test_default_budget_is_ten_steps(self, tools, run_store):
        generative = MockGenerativeService(default_reply=tool_call("search", query="again"))
        engine = make_engine(generative, tools, run_store)

        run = await engine.run("Goal", ["Loop forever"])

        assert engine.max_steps == MAX_STEPS_PER_PHASE == 10
        assert run.status == RunStatus.FAILED
        assert run.error == "Phase 1 exceeded maximum steps (10)"
        assert [s.order for s in run.phases[0].steps] == list(range(1, 11))
        assert len(generative.calls) == 10

    async def test_finish_on_last_allowed_step(self, tools, run_store):
        replies = [tool_call("search", query=f"q{i}") for i in range(9)] + [finish("just in time")]
        engine = make_engine(MockGenerativeService(replies), tools, run_store)

        run = await engine.run("Goal", ["Ten steps"])

        assert run.status == RunStatus.COMPLETED
        assert run.phases[0].result == "just in time"
        assert [s.order for s in run.phases[0].steps] == list(range(1, 10))

    async def test_tool_errors_become_observations(self, run_store):
        registry = register_builtin_tools(ToolRegistry())
        generative = MockGenerativeService([
            tool_call("calculator", operation="divide", a=1, b=0),
            tool_call("no_such_tool"),
            finish("gave up politely"),
        ])
        engine = make_engine(generative, ToolExecutor(registry), run_store)

        run = await engine.run("Goal", ["Divide"])

        steps = run.phases[0].steps
        assert run.status == RunStatus.COMPLETED
        assert steps[0].observation == "Error: Cannot divide by zero."
        assert steps[1].observation == "Error: Tool 'no_such_tool' not found."

    async def test_broken_tool_host_fails_run(self, run_store):
        tools = MockToolExecutor({"search": "x"}, raise_on={"search": ToolHostError("host down")})
        engine = make_engine(MockGenerativeService([tool_call("search")]), tools, run_store)

        run = await engine.run("Goal", ["Phase"])

        assert run.status == RunStatus.FAILED
        assert run.error == "host down"
        assert run.phases[0].steps[0].status == StepStatus.FAILED

    def test_step_history_format(self):
        assert format_step_history([]) == "None yet."


# =============================================================================
# Phases
# =============================================================================

class TestPhases:

    async def test_phase_history_is_isolated(self, tools, run_store):
        """Phase 2 starts with an empty step history."""
        generative = MockGenerativeService([
            tool_call("search", query="a"),
            finish("phase one result"),
            finish("phase two result"),
        ])
        engine = make_engine(generative, tools, run_store)

        run = await engine.run("Goal", ["First", "Second"])

        phase_two_prompt = generative.calls[2].prompt
        assert "Current phase goal: Second" in phase_two_prompt
        assert "None yet." in phase_two_prompt
        assert "found it" not in phase_two_prompt
        assert run.result_summary == (
            "Execution completed. Results from each phase:\n\n"
            "--- Phase 1 Result ---\nphase one result\n\n"
            "--- Phase 2 Result ---\nphase two result"
        )

    async def test_failure_leaves_later_phases_pending(self, tools, run_store):
        generative = MockGenerativeService([
            finish("one"),
            GenerativeServiceError("model crashed"),
        ])
        engine = make_engine(generative, tools, run_store)

        run = await engine.run("Goal", ["P1", "P2", "P3"])

        assert run.status == RunStatus.FAILED
        assert run.error == "model crashed"
        assert [p.status for p in run.phases] == [
            PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.PENDING,
        ]
        assert run.completed_at is not None

    async def test_resume_skips_completed_phases(self, tools, run_store):
        run = run_store.create_run("Goal", ["P1", "P2"])
        run_store.start_phase(run.phases[0].id)
        run_store.complete_phase(run.phases[0].id, "earlier result")
        generative = MockGenerativeService([finish("second result")])
        engine = make_engine(generative, tools, run_store)

        final = await engine.execute(run.id)

        assert len(generative.calls) == 1
        assert final.status == RunStatus.COMPLETED
        assert "earlier result" in final.result_summary
        assert "second result" in final.result_summary

    async def test_execute_unknown_run(self, tools, run_store):
        engine = make_engine(MockGenerativeService(), tools, run_store)
        with pytest.raises(KeyError):
            await engine.execute("missing")

    async def test_finished_run_is_not_reexecuted(self, tools, run_store):
        generative = MockGenerativeService([finish("done")])
        engine = make_engine(generative, tools, run_store)
        run = await engine.run("Goal", ["P1"])

        again = await engine.execute(run.id)

        assert again.status == RunStatus.COMPLETED
        assert len(generative.calls) == 1

    def test_empty_plan_rejected(self, tools, run_store):
        engine = make_engine(MockGenerativeService(), tools, run_store)
        with pytest.raises(ValueError):
            engine.create_run("Goal", [])


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:

    async def test_token_cancelled_before_start(self, tools, run_store):
        token = CancellationToken()
        token.cancel()
        engine = make_engine(MockGenerativeService(), tools, run_store)

        run = await engine.run("Goal", ["P1", "P2"], cancel_token=token)

        assert run.status == RunStatus.FAILED
        assert run.error == "Run cancelled"
        assert all(p.status == PhaseStatus.PENDING for p in run.phases)

    async def test_cancel_between_steps(self, tools, run_store):
        token = CancellationToken()

        class CancellingTools(MockToolExecutor):
            async def execute(self, tool_name, args):
                token.cancel()
                return await super().execute(tool_name, args)

        generative = MockGenerativeService([tool_call("search"), finish("never reached")])
        engine = make_engine(generative, CancellingTools({"search": "ok"}), run_store)

        run = await engine.run("Goal", ["P1"], cancel_token=token)

        assert run.status == RunStatus.FAILED
        assert run.error == "Run cancelled"
        assert run.phases[0].status == PhaseStatus.FAILED
        assert len(run.phases[0].steps) == 1
        assert len(generative.calls) == 1

    async def test_task_cancellation_marks_run_failed(self, tools, run_store):
        generative = BlockingGenerativeService([finish("late")])
        engine = make_engine(generative, tools, run_store)
        run = engine.create_run("Goal", ["P1"])

        task = asyncio.ensure_future(engine.execute(run.id))
        await generative.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = run_store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error == "Run cancelled"


# =============================================================================
# Consolidation hand-off
# =============================================================================

class TestConsolidationHandOff:

    async def test_completed_run_schedules_consolidation(self, tools, run_store):
        generative = MockGenerativeService([
            tool_call("search", query="x"),
            finish("done"),
            '{"goal_template": "Research {topic}", "trigger_keywords": ["Research"], '
            '"steps": [{"step_goal": "Search for the topic"}]}',
        ])
        background = BackgroundTaskSupervisor()
        consolidation = ExperienceConsolidationPipeline(generative, run_store)
        engine = make_engine(
            generative, tools, run_store, background=background, consolidation=consolidation
        )

        run = await engine.run("Research x", ["Search"])
        await background.drain()

        experiences = run_store.list_experiences(source_run_id=run.id)
        assert len(experiences) == 1
        assert experiences[0].trigger_keywords == ["research"]

    async def test_failed_run_is_not_consolidated(self, tools, run_store):
        generative = MockGenerativeService([GenerativeServiceError("boom")])
        background = BackgroundTaskSupervisor()
        consolidation = ExperienceConsolidationPipeline(generative, run_store)
        engine = make_engine(
            generative, tools, run_store, background=background, consolidation=consolidation
        )

        await engine.run("Goal", ["P1"])
        await background.drain()

        assert background.pending == 0
        assert run_store.list_experiences() == []
