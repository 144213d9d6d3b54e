"""Context assembly: the read path for one user turn.

1. Always read the last ``episodic_depth`` turns.
2. Fan out to the conditional tiers the conversation enables:
   semantic (top-K on the raw query), structured (the first mentioned
   contact, by id or best name match),
   graph (first capitalized token of the query).
3. Join them. A failing tier counts as zero results.
4. Render non-empty sections in fixed order and prefix the query with
   them only if any section is non-empty.
5. Generate once. Only a generative failure propagates.
"""

import asyncio
import logging
import re
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional

from ..interfaces import (
    Contact,
    Conversation,
    HistoryMessage,
    IGenerativeService,
    SemanticMatch,
    Turn,
)
from ..services.audit import PipelineAuditStore, StepHandle
from ..services.tiers import TierRegistry

logger = logging.getLogger(__name__)

PIPELINE_TYPE = "ContextAssembly"

KNOWLEDGE_HEADER = "--- Relevant Knowledge ---"
CONTACTS_HEADER = "--- Contact Information ---"
CONCEPTS_HEADER = "--- Related Concepts ---"

_CAPITALIZED_RE = re.compile(r"\b[A-Z][A-Za-z0-9_-]*\b")


def find_capitalized_token(text: str) -> Optional[str]:
    """First capitalized word in ``text``, a crude proper-noun guess."""
    match = _CAPITALIZED_RE.search(text)
    return match.group(0) if match else None


@dataclass
class AssemblyResult:
    """Reply plus everything retrieved to ground it."""
    reply: str
    prompt: str
    context_block: str
    history: list[Turn]
    retrieval: dict[str, list[Any]] = field(default_factory=dict)
    latency_ms: float = 0.0


class ContextAssemblyPipeline:
    """Parallel tier retrieval followed by a single generation."""

    def __init__(
        self,
        tiers: TierRegistry,
        generative: IGenerativeService,
        episodic_depth: int = 8,
        semantic_top_k: int = 3,
        audit: Optional[PipelineAuditStore] = None,
    ):
        self.tiers = tiers
        self.generative = generative
        self.episodic_depth = episodic_depth
        self.semantic_top_k = semantic_top_k
        self.audit = audit

    async def assemble(
        self,
        conversation: Conversation,
        user_query: str,
        mentioned_contacts: Optional[list[Contact]] = None,
        exclude_turn_id: Optional[str] = None,
    ) -> AssemblyResult:
        """Build grounded context for ``user_query`` and generate a reply.

        Args:
            conversation: Conversation whose flags select the tiers.
            user_query: Raw user text.
            mentioned_contacts: Contacts referenced in the query; only the
                first one is looked up.
            exclude_turn_id: Turn to drop from history (the just-persisted
                user turn, which is sent as the final prompt instead).

        Raises:
            GenerativeServiceError: The reply could not be generated.
        """
        started = time.perf_counter()

        history = await self.tiers.episodic.query(
            conversation_id=conversation.id, limit=self.episodic_depth + (1 if exclude_turn_id else 0)
        )
        if exclude_turn_id:
            history = [t for t in history if t.id != exclude_turn_id]
        history = history[-self.episodic_depth:]

        retrieval = await self._retrieve(conversation, user_query, mentioned_contacts or [])
        context_block = self.build_context_block(
            retrieval.get("semantic", []),
            retrieval.get("structured", []),
            retrieval.get("graph", []),
        )
        prompt = f"{context_block}\n\n{user_query}" if context_block else user_query
        retrieval["episodic"] = history

        messages = [HistoryMessage(role=t.role, content=t.content) for t in history]
        messages.append(HistoryMessage(role="user", content=prompt))

        recorder = self.audit.start(PIPELINE_TYPE) if self.audit else None
        step_scope = (
            recorder.step("generate_reply", input_summary=prompt) if recorder else nullcontext(StepHandle())
        )
        try:
            with step_scope as step:
                reply = await self.generative.generate_text(
                    messages, conversation.system_prompt, conversation.model_config()
                )
                step.output_summary = reply
        except Exception as e:
            if recorder:
                recorder.finish(error=str(e))
            raise

        if recorder:
            recorder.finish()

        return AssemblyResult(
            reply=reply,
            prompt=prompt,
            context_block=context_block,
            history=history,
            retrieval=retrieval,
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    async def _retrieve(
        self,
        conversation: Conversation,
        user_query: str,
        mentioned_contacts: list[Contact],
    ) -> dict[str, list[Any]]:
        """Run the enabled conditional queries concurrently."""
        pending: dict[str, Awaitable] = {}

        semantic = self.tiers.get("semantic")
        if conversation.use_semantic_memory and semantic is not None:
            pending["semantic"] = semantic.query(query_text=user_query, top_k=self.semantic_top_k)

        structured = self.tiers.get("structured")
        if conversation.use_structured_memory and structured is not None and mentioned_contacts:
            pending["structured"] = self._lookup_contact(structured, mentioned_contacts[0])

        graph = self.tiers.get("graph")
        if conversation.use_graph_memory and graph is not None:
            token = find_capitalized_token(user_query)
            if token:
                pending["graph"] = graph.query(entity_name=token)

        if not pending:
            return {}

        outcomes = await asyncio.gather(*pending.values(), return_exceptions=True)
        results: dict[str, list[Any]] = {}
        for name, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("%s tier query failed, continuing without it: %s", name, outcome)
                results[name] = []
            else:
                results[name] = list(outcome or [])
        return results

    @staticmethod
    async def _lookup_contact(structured, mentioned: Contact) -> list[Contact]:
        """Profile of one mentioned contact: by id, else by name.

        An exact (case-insensitive) name match wins over substring matches;
        at most one profile is returned.
        """
        by_id = await structured.query(type="contact", id=mentioned.id)
        if by_id:
            return by_id
        candidates = await structured.query(type="contact", name=mentioned.name)
        wanted = mentioned.name.strip().casefold()
        exact = [c for c in candidates if c.name.casefold() == wanted]
        return (exact or candidates)[:1]

    @staticmethod
    def build_context_block(
        knowledge: list[SemanticMatch],
        contacts: list[Contact],
        concepts: list[str],
    ) -> str:
        """Render non-empty sections in knowledge / contacts / concepts order."""
        sections = []
        if knowledge:
            lines = "\n".join(f"- {m.text}" for m in knowledge)
            sections.append(f"{KNOWLEDGE_HEADER}\n{lines}")
        if contacts:
            lines = "\n".join(_format_contact(c) for c in contacts)
            sections.append(f"{CONTACTS_HEADER}\n{lines}")
        if concepts:
            lines = "\n".join(f"- {fact}" for fact in concepts)
            sections.append(f"{CONCEPTS_HEADER}\n{lines}")
        return "\n\n".join(sections)


def _format_contact(contact: Contact) -> str:
    details = [
        f"{label}: {value}"
        for label, value in (
            ("Email", contact.email),
            ("Company", contact.company),
            ("Phone", contact.phone),
            ("Notes", contact.notes),
        )
        if value
    ]
    return f"- {contact.name}" + (f" ({', '.join(details)})" if details else "")
