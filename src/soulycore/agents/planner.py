"""Goal planner: drafts ordered phase goals for a user's goal.

Drafts are shown to the caller for approval; runs are only ever created
from an approved phase list.
"""

import logging

from pydantic import BaseModel, Field, field_validator

from ..interfaces import HistoryMessage, IGenerativeService, SoulyCoreError

logger = logging.getLogger(__name__)

PLANNER_INSTRUCTION = """You break a goal into a short sequence of phases.
Return a JSON object {"phases": [{"goal": "..."}]} with phases in execution
order. Each phase goal must be concrete and independently checkable.
Respond with JSON only."""


class PlannedPhase(BaseModel):
    goal: str


class PlanPayload(BaseModel):
    phases: list[PlannedPhase] = Field(default_factory=list)

    @field_validator("phases", mode="before")
    @classmethod
    def accept_plain_strings(cls, value):
        if isinstance(value, list):
            return [{"goal": v} if isinstance(v, str) else v for v in value]
        return value


class GoalPlanner:
    def __init__(self, generative: IGenerativeService, max_phases: int = 8):
        self.generative = generative
        self.max_phases = max_phases

    async def plan(self, goal: str) -> list[str]:
        """Return phase goals for ``goal``.

        Raises:
            ValueError: Empty goal.
            SoulyCoreError: The model produced no usable phases.
        """
        if not goal or not goal.strip():
            raise ValueError("Goal must not be empty")

        payload = await self.generative.generate_structured(
            [HistoryMessage(role="user", content=f"Goal: {goal.strip()}")],
            PLANNER_INSTRUCTION,
            PlanPayload,
        )
        phases = [p.goal.strip() for p in payload.phases if p.goal.strip()]
        if not phases:
            raise SoulyCoreError("Planner returned no phases")
        if len(phases) > self.max_phases:
            logger.info("Truncating plan from %d to %d phases", len(phases), self.max_phases)
            phases = phases[: self.max_phases]
        return phases
