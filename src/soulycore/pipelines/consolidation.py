"""Experience consolidation: turn a completed run into a reusable template.

Runs detached after a run completes. A run with no completed steps is
skipped. Every failure is logged and swallowed so the run's recorded
outcome never changes.
"""

import logging
import re
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

from ..interfaces import (
    Experience,
    HistoryMessage,
    IGenerativeService,
    IMemoryTier,
    RunStatus,
)
from ..services.run_store import AgentRunStore

logger = logging.getLogger(__name__)

CONSOLIDATION_INSTRUCTION = """You turn a finished task transcript into a reusable experience.

Return a JSON object with:
- "goal_template": the goal rewritten with placeholders such as {topic}.
- "trigger_keywords": 3 to 8 lowercase keywords that would identify a
  similar future goal.
- "steps": list of {"step_goal"} describing what each step achieved,
  without tool names or arguments.
- "learned_insights": optional list of short lessons worth remembering.

Respond with JSON only."""

_WORD_RE = re.compile(r"[a-z0-9]+")


class AbstractStep(BaseModel):
    step_goal: str


class ExperiencePayload(BaseModel):
    goal_template: str = Field(validation_alias=AliasChoices("goal_template", "goalTemplate"))
    trigger_keywords: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("trigger_keywords", "triggerKeywords"),
    )
    steps: list[AbstractStep] = Field(
        default_factory=list, validation_alias=AliasChoices("steps", "stepsJson")
    )
    learned_insights: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("learned_insights", "learnedInsights"),
    )


def format_transcript(goal: str, steps) -> str:
    lines = [f"Goal: {goal}", ""]
    for i, (phase, step) in enumerate(steps, start=1):
        lines.append(f"Step {i} (phase {phase.order}: {phase.goal})")
        lines.append(f"  Thought: {step.thought}")
        lines.append(f"  Action: {step.action} {step.action_input}")
        lines.append(f"  Observation: {step.observation}")
    return "\n".join(lines)


class ExperienceConsolidationPipeline:
    """Distils completed runs into ``Experience`` records."""

    def __init__(
        self,
        generative: IGenerativeService,
        run_store: AgentRunStore,
        semantic: Optional[IMemoryTier] = None,
    ):
        self.generative = generative
        self.run_store = run_store
        self.semantic = semantic

    async def consolidate(self, run_id: str) -> Optional[Experience]:
        """Create one Experience for ``run_id``, or None when skipped or failed."""
        try:
            return await self._consolidate(run_id)
        except Exception:
            logger.exception("Experience consolidation failed for run %s", run_id)
            return None

    async def _consolidate(self, run_id: str) -> Optional[Experience]:
        run = self.run_store.get_run(run_id)
        if run is None:
            logger.warning("Cannot consolidate unknown run %s", run_id)
            return None
        if run.status != RunStatus.COMPLETED:
            logger.info("Run %s is %s; skipping consolidation", run_id, run.status.value)
            return None

        steps = self.run_store.completed_steps(run_id)
        if not steps:
            logger.info("Run %s has no completed steps; nothing to consolidate", run_id)
            return None

        payload = await self.generative.generate_structured(
            [HistoryMessage(role="user", content=format_transcript(run.goal, steps))],
            CONSOLIDATION_INSTRUCTION,
            ExperiencePayload,
        )

        experience = self.run_store.add_experience(Experience(
            source_run_id=run_id,
            goal_template=payload.goal_template,
            trigger_keywords=[k.strip().lower() for k in payload.trigger_keywords if k.strip()],
            steps=[s.step_goal for s in payload.steps],
        ))
        logger.info("Consolidated run %s into experience %s", run_id, experience.id)

        if self.semantic is not None:
            for insight in payload.learned_insights:
                try:
                    await self.semantic.store(
                        text=insight,
                        metadata={"type": "learned_insight", "source_run_id": run_id},
                    )
                except Exception as e:
                    logger.warning("Failed to store insight from run %s: %s", run_id, e)

        return experience

    def find_experiences(self, query: str, limit: int = 5) -> list[Experience]:
        """Experiences whose trigger keywords overlap the words of ``query``."""
        words = set(_WORD_RE.findall(query.lower()))
        scored = []
        for experience in self.run_store.list_experiences():
            overlap = len(words & set(experience.trigger_keywords))
            if overlap:
                scored.append((overlap, experience.usage_count, experience))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [experience for _, _, experience in scored[:limit]]

    def record_usage(self, experience_id: str) -> bool:
        return self.run_store.increment_usage(experience_id)
