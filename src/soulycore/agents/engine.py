"""Autonomous agent engine: durable multi-phase reason-act-observe runs.

Phases run strictly in order. Inside a phase each step asks the model for
its next action given the overall goal, the phase goal and the phase's own
step history; the model either calls a tool or calls ``finish``. The first
phase failure fails the run and leaves later phases pending.
"""

import asyncio
import json
import logging
from typing import Optional

from ..interfaces import (
    AgentPhase,
    AgentRun,
    AgentStep,
    GenerativeServiceError,
    HistoryMessage,
    IGenerativeService,
    IToolExecutor,
    MaxStepsExceededError,
    PhaseStatus,
    RunCancelledError,
    RunStatus,
    StepStatus,
    ToolDeclaration,
)
from ..pipelines.consolidation import ExperienceConsolidationPipeline
from ..services.background import BackgroundTaskSupervisor
from ..services.run_store import AgentRunStore

logger = logging.getLogger(__name__)

MAX_STEPS_PER_PHASE = 10
FINISH_TOOL_NAME = "finish"

FINISH_TOOL = ToolDeclaration(
    name=FINISH_TOOL_NAME,
    description="Call this when the current phase goal is achieved. "
                "Pass the phase outcome as `result`.",
    parameters={
        "type": "object",
        "properties": {
            "result": {"type": "string", "description": "Outcome of the phase."},
        },
        "required": ["result"],
    },
)

AGENT_SYSTEM_INSTRUCTION = """You are an autonomous agent working through a plan one phase at a time.
At each step choose exactly one tool call. Use the observations from previous
steps. When the current phase goal is achieved, call `finish` with a concise
result for this phase."""


class CancellationToken:
    """Cooperative cancellation flag checked before every phase and step."""

    def __init__(self):
        self._cancelled = False
        self.reason = "Run cancelled"

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        if reason:
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelledError(self.reason)


def format_step_history(steps: list[AgentStep]) -> str:
    if not steps:
        return "None yet."
    blocks = []
    for step in steps:
        blocks.append(
            f"Step {step.order}:\n"
            f"  Thought: {step.thought}\n"
            f"  Action: {step.action}({json.dumps(step.action_input, default=str)})\n"
            f"  Observation: {step.observation}"
        )
    return "\n".join(blocks)


def format_run_summary(phases: list[AgentPhase]) -> str:
    parts = [
        f"--- Phase {phase.order} Result ---\n{phase.result or ''}"
        for phase in phases
    ]
    return "Execution completed. Results from each phase:\n\n" + "\n\n".join(parts)


class AutonomousAgentEngine:
    """Executes persisted runs against a generative service and tool executor.

    Args:
        generative: Service used for every reasoning call.
        tool_executor: Provides tool declarations and executes tool calls.
        run_store: Durable run/phase/step storage.
        background: Supervisor that runs consolidation after completion.
        consolidation: Pipeline scheduled when a run completes.
        max_steps: Step budget per phase.
    """

    def __init__(
        self,
        generative: IGenerativeService,
        tool_executor: IToolExecutor,
        run_store: AgentRunStore,
        background: Optional[BackgroundTaskSupervisor] = None,
        consolidation: Optional[ExperienceConsolidationPipeline] = None,
        max_steps: int = MAX_STEPS_PER_PHASE,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.generative = generative
        self.tool_executor = tool_executor
        self.run_store = run_store
        self.background = background
        self.consolidation = consolidation
        self.max_steps = max_steps

    def create_run(self, goal: str, phase_goals: list[str]) -> AgentRun:
        """Persist a run and its pending phases from an approved plan."""
        run = self.run_store.create_run(goal, phase_goals)
        logger.info("Created run %s with %d phases", run.id, len(run.phases))
        return run

    async def run(
        self,
        goal: str,
        phase_goals: list[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AgentRun:
        run = self.create_run(goal, phase_goals)
        return await self.execute(run.id, cancel_token)

    async def execute(self, run_id: str, cancel_token: Optional[CancellationToken] = None) -> AgentRun:
        """Drive a run to completion or failure and return its final state.

        Phases already completed (for example before a restart) are kept and
        their results reused.

        Raises:
            KeyError: Unknown run id.
        """
        run = self.run_store.get_run(run_id, include_steps=False)
        if run is None:
            raise KeyError(f"Unknown run: {run_id}")
        if run.status != RunStatus.RUNNING:
            return self.run_store.get_run(run_id)

        token = cancel_token or CancellationToken()
        try:
            for phase in sorted(run.phases, key=lambda p: p.order):
                if phase.status == PhaseStatus.COMPLETED:
                    continue
                token.raise_if_cancelled()
                phase.result = await self._execute_phase(run, phase, token)
                phase.status = PhaseStatus.COMPLETED
        except asyncio.CancelledError:
            self.run_store.fail_run(run_id, "Run cancelled")
            raise
        except Exception as e:
            logger.error("Run %s failed: %s", run_id, e)
            self.run_store.fail_run(run_id, str(e))
            return self.run_store.get_run(run_id)

        self.run_store.complete_run(run_id, format_run_summary(run.phases))
        logger.info("Run %s completed", run_id)
        self._schedule_consolidation(run_id)
        return self.run_store.get_run(run_id)

    def _schedule_consolidation(self, run_id: str) -> None:
        if self.consolidation is None or self.background is None:
            return
        self.background.spawn(
            self.consolidation.consolidate(run_id), name=f"consolidate-{run_id}"
        )

    async def _execute_phase(
        self, run: AgentRun, phase: AgentPhase, token: CancellationToken
    ) -> str:
        self.run_store.start_phase(phase.id)
        logger.info("Run %s: phase %d started: %s", run.id, phase.order, phase.goal)
        try:
            result = await self._step_loop(run, phase, token)
        except BaseException as e:
            self.run_store.fail_phase(phase.id, str(e) or type(e).__name__)
            raise
        self.run_store.complete_phase(phase.id, result)
        return result

    async def _step_loop(self, run: AgentRun, phase: AgentPhase, token: CancellationToken) -> str:
        # Steps persisted before a restart keep their numbers and stay in history.
        existing = self.run_store.get_steps(phase.id)
        history = [s for s in existing if s.status == StepStatus.COMPLETED]
        tools = self.tool_executor.declarations() + [FINISH_TOOL]

        for order in range(len(existing) + 1, self.max_steps + 1):
            token.raise_if_cancelled()
            prompt = self.build_prompt(run.goal, phase.goal, history)
            generation = await self.generative.generate_with_tools(
                [HistoryMessage(role="user", content=prompt)],
                AGENT_SYSTEM_INSTRUCTION,
                tools,
            )

            call = generation.tool_call
            if call is None:
                # A plain answer ends the phase like finish(text).
                text = (generation.text or "").strip()
                if not text:
                    raise GenerativeServiceError("Model returned neither text nor a tool call")
                return text
            if call.name == FINISH_TOOL_NAME:
                return str(call.args.get("result", "")).strip()

            step = self.run_store.add_step(AgentStep(
                run_id=run.id,
                phase_id=phase.id,
                order=order,
                thought=(generation.text or "").strip() or "No thought provided.",
                action=call.name,
                action_input=dict(call.args),
            ))
            try:
                observation = await self.tool_executor.execute(call.name, call.args)
            except BaseException as e:
                self.run_store.finish_step(step.id, f"Error: {e}", StepStatus.FAILED)
                raise
            self.run_store.finish_step(step.id, observation)
            step.observation = observation
            step.status = StepStatus.COMPLETED
            history.append(step)

        raise MaxStepsExceededError(phase.order, self.max_steps)

    @staticmethod
    def build_prompt(goal: str, phase_goal: str, history: list[AgentStep]) -> str:
        return (
            f"Overall goal: {goal}\n"
            f"Current phase goal: {phase_goal}\n\n"
            f"Steps taken in this phase:\n{format_step_history(history)}\n\n"
            "Decide the next action."
        )
