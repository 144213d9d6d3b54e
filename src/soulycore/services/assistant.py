"""AssistantCore: wires tiers, pipelines and the agent engine together.

Request-path methods (``handle_turn``, ``start_run``) return as soon as the
user-visible work is done; extraction, summarization, agent execution and
consolidation are handed to the background supervisor.
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ..agents.engine import AutonomousAgentEngine, CancellationToken
from ..agents.planner import GoalPlanner
from ..interfaces import (
    AgentRun,
    Contact,
    Conversation,
    EntityRelationship,
    Experience,
    HistoryMessage,
    IGenerativeService,
    PipelineRun,
    Turn,
)
from ..pipelines.consolidation import ExperienceConsolidationPipeline
from ..pipelines.context_assembly import AssemblyResult, ContextAssemblyPipeline
from ..pipelines.link_prediction import LinkPredictionPipeline, LinkProposal
from ..pipelines.memory_extraction import MemoryExtractionPipeline
from ..utils import word_count
from .audit import PipelineAuditStore
from .background import BackgroundTaskSupervisor
from .embeddings import HashEmbeddingService, OpenAIEmbeddingService
from .generative import OpenAICompatibleGenerativeService
from .run_store import AgentRunStore
from .tiers import TierRegistry, build_tier_registry
from .tools import ToolExecutor, ToolRegistry, register_builtin_tools

if TYPE_CHECKING:
    from ..server.config import SoulyCoreConfig

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = "Summarize the following message in three sentences or fewer."


@dataclass
class TurnResult:
    user_turn: Turn
    model_turn: Turn
    assembly: AssemblyResult


class AssistantCore:
    """Facade over the memory tiers, pipelines and agent engine."""

    def __init__(
        self,
        generative: IGenerativeService,
        tiers: TierRegistry,
        run_store: AgentRunStore,
        audit: PipelineAuditStore,
        background: BackgroundTaskSupervisor,
        tool_registry: Optional[ToolRegistry] = None,
        episodic_depth: int = 8,
        semantic_top_k: int = 3,
        max_steps_per_phase: int = 10,
        max_plan_phases: int = 8,
        extract_entities: bool = True,
        extract_knowledge: bool = True,
        extract_relationships: bool = False,
        instance_id: str = "default",
    ):
        self.instance_id = instance_id
        self.generative = generative
        self.tiers = tiers
        self.run_store = run_store
        self.audit = audit
        self.background = background
        self.tool_registry = tool_registry or register_builtin_tools(ToolRegistry())
        self.extract_entities = extract_entities
        self.extract_knowledge = extract_knowledge

        self.context_assembly = ContextAssemblyPipeline(
            tiers, generative,
            episodic_depth=episodic_depth,
            semantic_top_k=semantic_top_k,
            audit=audit,
        )
        self.extraction = MemoryExtractionPipeline(
            generative, tiers, audit, extract_relationships=extract_relationships
        )
        self.link_prediction = LinkPredictionPipeline(generative, tiers, audit=audit)
        self.consolidation = ExperienceConsolidationPipeline(
            generative, run_store, semantic=tiers.get("semantic")
        )
        self.engine = AutonomousAgentEngine(
            generative,
            ToolExecutor(self.tool_registry),
            run_store,
            background=background,
            consolidation=self.consolidation,
            max_steps=max_steps_per_phase,
        )
        self.planner = GoalPlanner(generative, max_phases=max_plan_phases)
        self._cancel_tokens: dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, **fields) -> Conversation:
        return self.tiers.episodic.create_conversation(**fields)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.tiers.episodic.get_conversation(conversation_id)

    async def handle_turn(
        self,
        conversation_id: str,
        user_query: str,
        mentioned_contacts: Optional[list[Contact]] = None,
        parent_turn_id: Optional[str] = None,
    ) -> TurnResult:
        """Persist the user turn, assemble a reply, persist it, schedule extraction.

        Raises:
            KeyError: Unknown conversation.
            GenerativeServiceError: Reply generation failed.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")

        episodic = self.tiers.episodic
        user_turn = await episodic.store(
            conversation_id=conversation_id,
            role="user",
            content=user_query,
            parent_turn_id=parent_turn_id,
            token_count=word_count(user_query),
        )

        started = time.perf_counter()
        assembly = await self.context_assembly.assemble(
            conversation, user_query, mentioned_contacts, exclude_turn_id=user_turn.id
        )
        model_turn = await episodic.store(
            conversation_id=conversation_id,
            role="model",
            content=assembly.reply,
            parent_turn_id=user_turn.id,
            token_count=word_count(assembly.reply),
            response_time_ms=(time.perf_counter() - started) * 1000,
        )

        if conversation.enable_memory_extraction:
            self.background.spawn(
                self.extraction.run(
                    f"user: {user_query}\nmodel: {assembly.reply}",
                    message_id=model_turn.id,
                    conversation_id=conversation_id,
                    extract_entities=self.extract_entities,
                    extract_knowledge=self.extract_knowledge,
                ),
                name=f"extract-{model_turn.id}",
            )

        return TurnResult(user_turn=user_turn, model_turn=model_turn, assembly=assembly)

    async def summarize_turn(self, turn: Turn) -> None:
        """Summarize a long turn into semantic memory."""
        summary = await self.generative.generate_text(
            [HistoryMessage(role="user", content=turn.content)], SUMMARY_INSTRUCTION
        )
        semantic = self.tiers.get("semantic")
        if semantic is None or not summary.strip():
            return
        await semantic.store(
            text=summary.strip(),
            metadata={
                "type": "turn_summary",
                "conversation_id": turn.conversation_id,
                "message_id": turn.id,
            },
        )

    # ------------------------------------------------------------------
    # Entity links
    # ------------------------------------------------------------------

    async def propose_link(self, conversation_id: str) -> Optional[LinkProposal]:
        """Suggest a relationship between entities the conversation keeps mentioning together.

        Raises:
            KeyError: Unknown conversation.
        """
        if self.get_conversation(conversation_id) is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        return await self.link_prediction.propose(conversation_id)

    async def accept_link(self, source_id: str, predicate: str, target_id: str) -> EntityRelationship:
        return await self.link_prediction.accept(source_id, predicate, target_id)

    # ------------------------------------------------------------------
    # Agent runs
    # ------------------------------------------------------------------

    async def plan(self, goal: str) -> list[str]:
        return await self.planner.plan(goal)

    def start_run(self, goal: str, phase_goals: list[str]) -> AgentRun:
        """Create a run from an approved plan and execute it in the background."""
        run = self.engine.create_run(goal, phase_goals)
        token = CancellationToken()
        self._cancel_tokens[run.id] = token
        task = self.background.spawn(self.engine.execute(run.id, token), name=f"run-{run.id}")
        task.add_done_callback(lambda _: self._cancel_tokens.pop(run.id, None))
        return run

    def get_run(self, run_id: str) -> Optional[AgentRun]:
        return self.run_store.get_run(run_id)

    def list_runs(self, limit: int = 50) -> list[AgentRun]:
        return self.run_store.list_runs(limit)

    def cancel_run(self, run_id: str) -> bool:
        """Signal a running run to stop before its next phase or step."""
        token = self._cancel_tokens.get(run_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def list_experiences(self, query: Optional[str] = None, limit: int = 20) -> list[Experience]:
        if query:
            return self.consolidation.find_experiences(query, limit)
        return self.run_store.list_experiences(limit=limit)

    def get_pipeline_run(self, run_id: str) -> Optional[PipelineRun]:
        return self.audit.get_run(run_id)

    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel background work and release every store."""
        await self.background.shutdown()
        self.tiers.close_all()
        self.run_store.close()
        self.audit.close()
        close = getattr(self.generative, "close", None)
        if close is not None:
            await close()


def create_embedding_service(config: "SoulyCoreConfig"):
    embedding = config.embedding
    if embedding.provider == "openai":
        return OpenAIEmbeddingService(
            api_key=embedding.api_key,
            model=embedding.model or OpenAIEmbeddingService.DEFAULT_MODEL,
            dimensions=embedding.dimensions,
            api_base=embedding.api_base,
        )
    if embedding.provider == "fastembed":
        from .fastembed_service import FastEmbedService, DEFAULT_MODEL

        return FastEmbedService(model=embedding.model or DEFAULT_MODEL, dimensions=embedding.dimensions)
    return HashEmbeddingService(dimensions=embedding.dimensions)


def create_assistant_core(
    config: "SoulyCoreConfig",
    generative: Optional[IGenerativeService] = None,
) -> AssistantCore:
    """Build a fully wired AssistantCore from configuration.

    Args:
        config: Service configuration.
        generative: Pre-built generative service (tests pass a mock).
            Required when ``config.generation.provider`` is "mock".
    """
    embedding_service = create_embedding_service(config)
    if generative is None:
        if config.generation.provider == "mock":
            raise ValueError("generation.provider=mock requires an injected generative service")
        gen = config.generation
        generative = OpenAICompatibleGenerativeService(
            api_key=gen.api_key,
            model=gen.model,
            api_base=gen.api_base,
            temperature=gen.temperature,
            top_p=gen.top_p,
            timeout_seconds=gen.timeout_seconds,
            embedding_service=embedding_service,
            max_retries=gen.max_retries,
            retry_initial_delay=gen.retry_initial_delay,
        )

    background = BackgroundTaskSupervisor()
    core_ref: dict[str, AssistantCore] = {}

    async def summarizer(turn: Turn) -> None:
        await core_ref["core"].summarize_turn(turn)

    tiers = build_tier_registry(
        config.tiers.as_dict(),
        config.db,
        embedding_service,
        background,
        summarizer=summarizer,
    )
    core = AssistantCore(
        generative=generative,
        tiers=tiers,
        run_store=AgentRunStore(config.db.sqlite_path("agent_runs")),
        audit=PipelineAuditStore(config.db.sqlite_path("pipeline_audit")),
        background=background,
        episodic_depth=config.context.episodic_depth,
        semantic_top_k=config.context.semantic_top_k,
        max_steps_per_phase=config.agent.max_steps_per_phase,
        max_plan_phases=config.agent.max_plan_phases,
        extract_entities=config.extraction.extract_entities,
        extract_knowledge=config.extraction.extract_knowledge,
        extract_relationships=config.extraction.extract_relationships,
        instance_id=config.instance_id,
    )
    core_ref["core"] = core
    logger.info(
        "AssistantCore ready (instance: %s, tiers: %s)",
        config.instance_id, ", ".join(config.tiers.as_dict().values()),
    )
    return core
