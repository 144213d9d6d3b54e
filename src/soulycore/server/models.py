"""Pydantic models for HTTP API request/response."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..interfaces import (
    AgentPhase,
    AgentRun,
    AgentStep,
    Experience,
    PipelineRun,
)


# =============================================================================
# Request Models
# =============================================================================

class ConversationCreateRequest(BaseModel):
    """Request to start a conversation."""
    title: str = Field(default="New Chat")
    system_prompt: str = Field(default="", description="System instruction for every reply")
    use_semantic_memory: bool = True
    use_structured_memory: bool = True
    use_graph_memory: bool = True
    enable_memory_extraction: bool = True
    model: Optional[str] = Field(default=None, description="Model override")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class MentionedContact(BaseModel):
    name: str
    email: Optional[str] = None
    id: Optional[str] = Field(default=None, description="Stored contact id, when known")


class ChatRequest(BaseModel):
    """One user message in a conversation."""
    conversation_id: str
    message: str = Field(..., min_length=1)
    parent_turn_id: Optional[str] = None
    mentioned_contacts: list[MentionedContact] = Field(default_factory=list)


class PlanRequest(BaseModel):
    goal: str = Field(..., min_length=1, description="Goal to break into phases")


class RunCreateRequest(BaseModel):
    """Approved plan to execute."""
    goal: str = Field(..., min_length=1)
    phases: list[str] = Field(..., min_length=1, description="Approved phase goals, in order")


class RelationshipCreateRequest(BaseModel):
    """Accepted link between two stored entities."""
    source_id: str = Field(..., min_length=1)
    predicate: str = Field(..., min_length=1, description="Normalised to snake_case")
    target_id: str = Field(..., min_length=1)


# =============================================================================
# Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    instance_id: str
    tiers: list[str]
    background_tasks: int
    version: str = "0.1.0"


class ConversationResponse(BaseModel):
    id: str
    title: str
    system_prompt: str
    use_semantic_memory: bool
    use_structured_memory: bool
    use_graph_memory: bool
    enable_memory_extraction: bool
    created_at: datetime


class ChatResponse(BaseModel):
    conversation_id: str
    user_turn_id: str
    model_turn_id: str
    reply: str
    latency_ms: float


class PlanResponse(BaseModel):
    goal: str
    phases: list[str]


class StepResponse(BaseModel):
    order: int
    thought: str
    action: str
    action_input: dict
    observation: Optional[str] = None
    status: str

    @classmethod
    def from_step(cls, step: AgentStep) -> "StepResponse":
        return cls(
            order=step.order,
            thought=step.thought,
            action=step.action,
            action_input=step.action_input,
            observation=step.observation,
            status=step.status.value,
        )


class PhaseResponse(BaseModel):
    id: str
    order: int
    goal: str
    status: str
    result: Optional[str] = None
    steps: list[StepResponse] = Field(default_factory=list)

    @classmethod
    def from_phase(cls, phase: AgentPhase) -> "PhaseResponse":
        return cls(
            id=phase.id,
            order=phase.order,
            goal=phase.goal,
            status=phase.status.value,
            result=phase.result,
            steps=[StepResponse.from_step(s) for s in phase.steps],
        )


class RunResponse(BaseModel):
    id: str
    goal: str
    status: str
    result_summary: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    phases: list[PhaseResponse] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: AgentRun) -> "RunResponse":
        return cls(
            id=run.id,
            goal=run.goal,
            status=run.status.value,
            result_summary=run.result_summary,
            error=run.error,
            created_at=run.created_at,
            completed_at=run.completed_at,
            phases=[PhaseResponse.from_phase(p) for p in run.phases],
        )


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class ExperienceResponse(BaseModel):
    id: str
    source_run_id: str
    goal_template: str
    trigger_keywords: list[str]
    steps: list[str]
    usage_count: int
    created_at: datetime

    @classmethod
    def from_experience(cls, experience: Experience) -> "ExperienceResponse":
        return cls(
            id=experience.id,
            source_run_id=experience.source_run_id,
            goal_template=experience.goal_template,
            trigger_keywords=experience.trigger_keywords,
            steps=experience.steps,
            usage_count=experience.usage_count,
            created_at=experience.created_at,
        )


class PipelineStepResponse(BaseModel):
    order: int
    name: str
    status: str
    input_summary: str
    output_summary: str
    duration_ms: float


class PipelineRunResponse(BaseModel):
    id: str
    pipeline_type: str
    status: str
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    created_at: datetime
    steps: list[PipelineStepResponse] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: PipelineRun) -> "PipelineRunResponse":
        return cls(
            id=run.id,
            pipeline_type=run.pipeline_type,
            status=run.status.value,
            duration_ms=run.duration_ms,
            error=run.error,
            created_at=run.created_at,
            steps=[
                PipelineStepResponse(
                    order=s.order,
                    name=s.name,
                    status=s.status.value,
                    input_summary=s.input_summary,
                    output_summary=s.output_summary,
                    duration_ms=s.duration_ms,
                )
                for s in run.steps
            ],
        )


class EntityRef(BaseModel):
    id: str
    name: str


class LinkProposalResponse(BaseModel):
    """Suggested relationship; every field but ``conversation_id`` is null when there is nothing to suggest."""
    conversation_id: str
    source: Optional[EntityRef] = None
    target: Optional[EntityRef] = None
    predicate: Optional[str] = None
    mention_count: int = 0


class RelationshipResponse(BaseModel):
    id: str
    source_id: str
    predicate: str
    target_id: str
