"""Link prediction: propose a relationship between entities that keep coming up together.

Looks at the last ``recent_messages`` turns of a conversation, finds the
entity pair named together in the most of them (at least ``min_mentions``)
that has no relationship in either direction, and asks the model for a
snake_case predicate. Nothing is stored until the proposal is accepted.
"""

import logging
import re
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from ..interfaces import (
    Entity,
    EntityRelationship,
    HistoryMessage,
    IGenerativeService,
)
from ..services.audit import PipelineAuditStore, StepHandle
from ..services.tiers import TierRegistry

logger = logging.getLogger(__name__)

PIPELINE_TYPE = "LinkPrediction"

DEFAULT_RECENT_MESSAGES = 10
DEFAULT_MIN_MENTIONS = 2

LINK_INSTRUCTION = """You suggest relationships between two entities that are
frequently mentioned together.

The predicate must be a short verb phrase in snake_case, for example
"is_deployed_on" or "works_for". Respond with JSON only:
{"predicate": "..."}"""

_NON_WORD_RE = re.compile(r"[^a-z0-9]+")


class PredicateSuggestion(BaseModel):
    predicate: str = Field(default="", description="Suggested predicate in snake_case")


@dataclass
class LinkProposal:
    """A suggested ``source -> predicate -> target`` edge, not yet stored."""
    source: Entity
    target: Entity
    predicate: str
    mention_count: int


def to_snake_case(text: str) -> str:
    return _NON_WORD_RE.sub("_", text.strip().lower()).strip("_")


def build_link_prompt(source: Entity, target: Entity) -> str:
    return (
        f'Entity 1: "{source.name}" (Description: {source.description or "none"})\n'
        f'Entity 2: "{target.name}" (Description: {target.description or "none"})\n\n'
        f"Suggest a predicate for the relationship: {source.name} -> [PREDICATE] -> {target.name}"
    )


class LinkPredictionPipeline:
    """Proposes missing relationships from entity co-mentions."""

    def __init__(
        self,
        generative: IGenerativeService,
        tiers: TierRegistry,
        audit: Optional[PipelineAuditStore] = None,
        recent_messages: int = DEFAULT_RECENT_MESSAGES,
        min_mentions: int = DEFAULT_MIN_MENTIONS,
    ):
        if recent_messages < 1:
            raise ValueError("recent_messages must be >= 1")
        if min_mentions < 1:
            raise ValueError("min_mentions must be >= 1")
        self.generative = generative
        self.tiers = tiers
        self.audit = audit
        self.recent_messages = recent_messages
        self.min_mentions = min_mentions

    async def propose(self, conversation_id: str) -> Optional[LinkProposal]:
        """Suggest one relationship for ``conversation_id``, or None.

        None means no qualifying pair was found or the model gave no usable
        predicate.

        Raises:
            TierError: The structured tier is not configured.
            GenerativeServiceError: The predicate could not be generated.
        """
        structured = self.tiers.require("structured")
        turns = await self.tiers.episodic.query(
            conversation_id=conversation_id, limit=self.recent_messages
        )
        pairs = structured.unlinked_co_mentions(
            [t.id for t in turns], min_mentions=self.min_mentions, limit=1
        )
        if not pairs:
            logger.debug("No unlinked co-mentioned entities in conversation %s", conversation_id)
            return None
        source, target, mention_count = pairs[0]

        prompt = build_link_prompt(source, target)
        recorder = self.audit.start(PIPELINE_TYPE) if self.audit else None
        step_scope = (
            recorder.step("suggest_predicate", input_summary=prompt) if recorder else nullcontext(StepHandle())
        )
        try:
            with step_scope as step:
                suggestion = await self.generative.generate_structured(
                    [HistoryMessage(role="user", content=prompt)],
                    LINK_INSTRUCTION,
                    PredicateSuggestion,
                )
                predicate = to_snake_case(suggestion.predicate)
                step.output_summary = predicate or "no predicate"
        except Exception as e:
            if recorder:
                recorder.finish(error=str(e))
            raise
        if recorder:
            recorder.finish()

        if not predicate:
            logger.info("Model suggested no predicate for %s / %s", source.name, target.name)
            return None
        return LinkProposal(
            source=source, target=target, predicate=predicate, mention_count=mention_count
        )

    async def accept(self, source_id: str, predicate: str, target_id: str) -> EntityRelationship:
        """Store an accepted proposal as a structured relationship.

        Raises:
            ValueError: The predicate is empty once normalised.
            TierError: Either entity does not exist.
        """
        predicate = to_snake_case(predicate)
        if not predicate:
            raise ValueError("predicate must not be empty")
        relationship = await self.tiers.require("structured").store(
            type="relationship",
            data={"source_id": source_id, "predicate": predicate, "target_id": target_id},
        )
        logger.info("Linked %s -[%s]-> %s", source_id, predicate, target_id)
        return relationship
