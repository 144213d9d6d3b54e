"""Core interfaces for the SoulyCore memory and agent system.

Every memory tier, generative backend and tool host implements one of the
ABCs below, so pipelines can be wired with real services in production and
with the fakes in ``soulycore.testing`` under test.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
import uuid

from .utils import cosine_similarity, utc_now

Role = Literal["user", "model"]


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Errors
# =============================================================================

class SoulyCoreError(Exception):
    """Base class for all SoulyCore errors."""


class GenerativeServiceError(SoulyCoreError):
    """A generative call failed and must not be retried."""


class RateLimitError(GenerativeServiceError):
    """The generative backend signalled rate limiting."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ExtractionParseError(GenerativeServiceError):
    """A structured generation returned a payload that failed validation."""


class TierError(SoulyCoreError):
    """A memory tier was called with parameters it cannot serve."""


class AgentError(SoulyCoreError):
    """Base class for fatal agent run errors."""


class MaxStepsExceededError(AgentError):
    """A phase used its whole step budget without calling finish."""

    def __init__(self, phase_order: int, max_steps: int):
        super().__init__(
            f"Phase {phase_order} exceeded maximum steps ({max_steps})"
        )
        self.phase_order = phase_order
        self.max_steps = max_steps


class RunCancelledError(AgentError):
    """The run's cancellation token fired."""

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)


class ToolHostError(AgentError):
    """The tool host itself is broken (as opposed to a single tool failing)."""


# =============================================================================
# Status enums
# =============================================================================

class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Conversation records
# =============================================================================

@dataclass
class Conversation:
    """A conversation and the memory tiers it lets context assembly read.

    Attributes:
        id: Conversation identifier.
        title: Display title.
        system_prompt: System instruction sent with every generation.
        use_semantic_memory: Query the semantic tier during assembly.
        use_structured_memory: Query the structured tier for mentioned contacts.
        use_graph_memory: Query the graph tier for capitalized tokens.
        use_document_memory: Reserved flag for document-tier participation.
        enable_memory_extraction: Run memory extraction after each reply.
        model: Optional model override.
        temperature: Optional sampling temperature override.
        top_p: Optional nucleus sampling override.
    """
    id: str = field(default_factory=new_id)
    title: str = "New Chat"
    system_prompt: str = ""
    use_semantic_memory: bool = True
    use_structured_memory: bool = True
    use_graph_memory: bool = True
    use_document_memory: bool = False
    enable_memory_extraction: bool = True
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)
    last_updated_at: datetime = field(default_factory=utc_now)

    def model_config(self) -> "ModelConfig":
        return ModelConfig(
            model=self.model,
            temperature=self.temperature,
            top_p=self.top_p,
        )


@dataclass
class Turn:
    """A single persisted message within a conversation."""
    conversation_id: str
    role: Role
    content: str
    id: str = field(default_factory=new_id)
    parent_turn_id: Optional[str] = None
    token_count: Optional[int] = None
    response_time_ms: Optional[float] = None
    is_bookmarked: bool = False
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        preview = self.content[:40] + "..." if len(self.content) > 40 else self.content
        return f"Turn(id={self.id[:8]}..., role={self.role}, content='{preview}')"


# =============================================================================
# Tier records
# =============================================================================

@dataclass
class SemanticRecord:
    id: str
    text: str
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None


@dataclass
class SemanticMatch:
    """A semantic query hit, ranked by descending score."""
    id: str
    text: str
    score: float
    metadata: dict = field(default_factory=dict)


@dataclass
class Entity:
    """A named entity, unique by (name, entity_type)."""
    name: str
    entity_type: str
    description: str = ""
    aliases: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Contact:
    """A contact, unique by (name, email)."""
    name: str
    email: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class EntityRelationship:
    """Directed edge between two structured entities."""
    source_id: str
    predicate: str
    target_id: str
    id: str = field(default_factory=new_id)


@dataclass
class EntityMention:
    """An entity named in one message; unique per (message_id, entity_id)."""
    message_id: str
    entity_id: str
    conversation_id: Optional[str] = None


@dataclass
class GraphEdge:
    id: str
    subject: str
    predicate: str
    object: str
    brain_id: Optional[str] = None

    def render(self) -> str:
        """Human-readable triple, e.g. ``"Ada wrote notes"``."""
        return f"{self.subject} {self.predicate.replace('_', ' ')} {self.object}"


@dataclass
class DocumentRecord:
    id: str
    doc_type: str
    data: dict
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class WorkingRecord:
    key: str
    data: Any
    expires_at: float


# =============================================================================
# Generation
# =============================================================================

@dataclass
class HistoryMessage:
    """One message of model input history."""
    role: Role
    content: str


@dataclass
class ModelConfig:
    """Per-call overrides for a generative request."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    json_output: bool = False


@dataclass
class ToolDeclaration:
    """A tool the model may call; ``parameters`` is a JSON-schema object."""
    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ToolCall:
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Output of a generative call: free text, a tool call, or both."""
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None


# =============================================================================
# Agent runs
# =============================================================================

@dataclass
class AgentStep:
    run_id: str
    phase_id: str
    order: int
    thought: str
    action: str
    action_input: dict = field(default_factory=dict)
    observation: Optional[str] = None
    status: StepStatus = StepStatus.RUNNING
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class AgentPhase:
    run_id: str
    order: int
    goal: str
    status: PhaseStatus = PhaseStatus.PENDING
    result: Optional[str] = None
    id: str = field(default_factory=new_id)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[AgentStep] = field(default_factory=list)


@dataclass
class AgentRun:
    goal: str
    status: RunStatus = RunStatus.RUNNING
    result_summary: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    phases: list[AgentPhase] = field(default_factory=list)


@dataclass
class Experience:
    """Reusable template distilled from a completed run."""
    source_run_id: str
    goal_template: str
    trigger_keywords: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    usage_count: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


# =============================================================================
# Pipeline audit
# =============================================================================

@dataclass
class PipelineStep:
    run_id: str
    order: int
    name: str
    status: PipelineStatus
    input_summary: str = ""
    output_summary: str = ""
    duration_ms: float = 0.0


@dataclass
class PipelineRun:
    pipeline_type: str
    status: PipelineStatus = PipelineStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    steps: list[PipelineStep] = field(default_factory=list)


# =============================================================================
# Service interfaces
# =============================================================================

class IMemoryTier(ABC):
    """Uniform capability interface shared by all memory tiers.

    Adapters accept keyword parameters specific to their tier. Backend
    failures propagate; callers decide whether a failure is fatal.
    """

    name: str = "tier"

    @abstractmethod
    async def query(self, **params: Any) -> Any:
        """Read records from the tier."""
        pass

    @abstractmethod
    async def store(self, **params: Any) -> Any:
        """Upsert a record and return it."""
        pass

    async def delete(self, record_id: str, **params: Any) -> bool:
        """Delete a record. Tiers without delete support raise."""
        raise NotImplementedError(f"{self.name} tier does not support delete")

    @property
    def supports_delete(self) -> bool:
        return type(self).delete is not IMemoryTier.delete

    def close(self) -> None:
        """Release backend resources."""
        return None


class IEmbeddingService(ABC):
    """Interface for embedding generation."""

    dimensions: int

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate embedding for text."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        pass

    def similarity(self, a: list[float], b: list[float]) -> float:
        """Cosine similarity between two embeddings."""
        return cosine_similarity(a, b)


class IGenerativeService(ABC):
    """Interface for text generation, tool calling and embeddings."""

    @abstractmethod
    async def generate_content(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig] = None,
        tools: Optional[list[ToolDeclaration]] = None,
    ) -> GenerationResult:
        """Generate a reply, possibly a tool call when tools are declared."""
        pass

    @abstractmethod
    async def generate_text(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig] = None,
    ) -> str:
        pass

    @abstractmethod
    async def generate_with_tools(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        tools: list[ToolDeclaration],
        config: Optional[ModelConfig] = None,
    ) -> GenerationResult:
        pass

    @abstractmethod
    async def generate_structured(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        response_model: type,
        config: Optional[ModelConfig] = None,
    ) -> Any:
        """Generate JSON validated against a pydantic ``response_model``."""
        pass

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        pass


class IToolExecutor(ABC):
    """Executes registered tools on behalf of the agent engine."""

    @abstractmethod
    def declarations(self) -> list[ToolDeclaration]:
        """Declarations of every available tool."""
        pass

    @abstractmethod
    async def execute(self, tool_name: str, args: dict) -> str:
        """Run a tool and return its observation text.

        Tool failures are returned as observation strings. Only a broken
        host raises ``ToolHostError``.
        """
        pass
