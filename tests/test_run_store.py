"""Tests for agent run persistence and the pipeline audit store."""

from datetime import timedelta

import pytest

from soulycore.interfaces import (
    AgentStep,
    Experience,
    PhaseStatus,
    PipelineStatus,
    RunStatus,
    StepStatus,
)
from soulycore.services.audit import PipelineAuditStore
from soulycore.services.run_store import AgentRunStore


# =============================================================================
# Runs
# =============================================================================

class TestAgentRunStore:

    def test_create_run_with_pending_phases(self, run_store):
        run = run_store.create_run("  Goal  ", ["First", " ", "Second"])

        stored = run_store.get_run(run.id)
        assert stored.goal == "Goal"
        assert stored.status == RunStatus.RUNNING
        assert [(p.order, p.goal) for p in stored.phases] == [(1, "First"), (2, "Second")]
        assert all(p.status == PhaseStatus.PENDING for p in stored.phases)

    def test_empty_goal_or_plan_rejected(self, run_store):
        with pytest.raises(ValueError):
            run_store.create_run("", ["x"])
        with pytest.raises(ValueError):
            run_store.create_run("goal", [" "])

    def test_steps_attach_to_their_phase(self, run_store):
        run = run_store.create_run("Goal", ["P1", "P2"])
        p1, p2 = run.phases
        step = run_store.add_step(AgentStep(
            run_id=run.id, phase_id=p2.id, order=1,
            thought="t", action="calculator", action_input={"a": 1},
        ))
        run_store.finish_step(step.id, "The result is 1.")

        stored = run_store.get_run(run.id)

        assert stored.phases[0].steps == []
        loaded = stored.phases[1].steps[0]
        assert loaded.action_input == {"a": 1}
        assert loaded.observation == "The result is 1."
        assert loaded.status == StepStatus.COMPLETED

    def test_failed_step_excluded_from_completed_steps(self, run_store):
        run = run_store.create_run("Goal", ["P1"])
        phase = run.phases[0]
        ok = run_store.add_step(
            AgentStep(run_id=run.id, phase_id=phase.id, order=1, thought="t", action="a")
        )
        bad = run_store.add_step(
            AgentStep(run_id=run.id, phase_id=phase.id, order=2, thought="t", action="b")
        )
        run_store.finish_step(ok.id, "fine")
        run_store.finish_step(bad.id, "Error: x", StepStatus.FAILED)

        steps = run_store.completed_steps(run.id)

        assert [s.action for _, s in steps] == ["a"]

    def test_finish_run_sets_completed_at(self, run_store):
        run = run_store.create_run("Goal", ["P1"])
        run_store.fail_run(run.id, "boom")

        stored = run_store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error == "boom"
        assert stored.completed_at is not None

    def test_timestamps_are_utc_aware(self, run_store):
        run = run_store.create_run("Goal", ["P1"])
        run_store.complete_run(run.id, "done")

        stored = run_store.get_run(run.id)
        assert stored.created_at.utcoffset() == timedelta(0)
        assert stored.completed_at.utcoffset() == timedelta(0)
        assert stored.completed_at >= stored.created_at

    def test_list_runs_and_missing_run(self, run_store):
        first = run_store.create_run("one", ["x"])
        second = run_store.create_run("two", ["x"])

        ids = [r.id for r in run_store.list_runs()]

        assert set(ids) == {first.id, second.id}
        assert run_store.get_run("missing") is None

    def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "runs.db"
        with AgentRunStore(path) as store:
            run = store.create_run("Goal", ["P1"])
            store.add_experience(Experience(
                source_run_id=run.id, goal_template="Do {x}",
                trigger_keywords=["do"], steps=["Do it"],
            ))

        with AgentRunStore(path) as store:
            assert store.get_run(run.id).goal == "Goal"
            experience = store.list_experiences(source_run_id=run.id)[0]
            assert experience.trigger_keywords == ["do"]
            assert experience.steps == ["Do it"]


# =============================================================================
# Pipeline audit
# =============================================================================

class TestPipelineAuditStore:

    def test_steps_are_ordered_and_run_finalized(self, audit):
        recorder = audit.start("ContextAssembly")
        with recorder.step("query_semantic", "hello") as step:
            step.output_summary = "2 matches"
        recorder.skip("query_graph")
        recorder.finish()

        run = audit.get_run(recorder.run_id)

        assert run.status == PipelineStatus.COMPLETED
        assert [(s.order, s.name, s.status) for s in run.steps] == [
            (1, "query_semantic", PipelineStatus.COMPLETED),
            (2, "query_graph", PipelineStatus.SKIPPED),
        ]
        assert run.steps[0].output_summary == "2 matches"
        assert run.duration_ms >= 0

    def test_failed_step_propagates(self, audit):
        recorder = audit.start("MemoryExtraction")
        with pytest.raises(RuntimeError):
            with recorder.step("generate_extraction"):
                raise RuntimeError("model down")
        recorder.finish(error="model down")

        run = audit.get_run(recorder.run_id)
        assert run.status == PipelineStatus.FAILED
        assert run.error == "model down"
        assert run.steps[0].output_summary == "model down"

    def test_summaries_are_truncated(self, audit):
        recorder = audit.start("X")
        with recorder.step("long", "x" * 500):
            pass

        step = audit.get_run(recorder.run_id).steps[0]
        assert len(step.input_summary) == 200
        assert step.input_summary.endswith("...")

    def test_list_runs_by_type(self):
        with PipelineAuditStore() as audit:
            audit.start("A").finish()
            audit.start("B").finish()

            assert [r.pipeline_type for r in audit.list_runs(pipeline_type="A")] == ["A"]
            assert len(audit.list_runs()) == 2
