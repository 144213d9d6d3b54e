"""API route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..interfaces import Contact, GenerativeServiceError, SoulyCoreError, TierError
from ..services.assistant import AssistantCore
from .models import (
    CancelResponse,
    ChatRequest,
    ChatResponse,
    ConversationCreateRequest,
    ConversationResponse,
    EntityRef,
    ExperienceResponse,
    HealthResponse,
    LinkProposalResponse,
    PipelineRunResponse,
    PlanRequest,
    PlanResponse,
    RelationshipCreateRequest,
    RelationshipResponse,
    RunCreateRequest,
    RunResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["assistant"])


def get_core() -> AssistantCore:
    """Dependency injection for the assistant core.

    This is set by the app during startup.
    """
    from .app import _core
    if _core is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _core


@router.get("/health", response_model=HealthResponse)
async def health(core: AssistantCore = Depends(get_core)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        instance_id=core.instance_id,
        tiers=list(core.tiers),
        background_tasks=core.background.pending,
    )


@router.post("/conversations", response_model=ConversationResponse)
async def create_conversation(
    request: ConversationCreateRequest,
    core: AssistantCore = Depends(get_core),
) -> ConversationResponse:
    conversation = core.create_conversation(**request.model_dump())
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        system_prompt=conversation.system_prompt,
        use_semantic_memory=conversation.use_semantic_memory,
        use_structured_memory=conversation.use_structured_memory,
        use_graph_memory=conversation.use_graph_memory,
        enable_memory_extraction=conversation.enable_memory_extraction,
        created_at=conversation.created_at,
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    core: AssistantCore = Depends(get_core),
) -> ChatResponse:
    """Send a user message and return the assistant's reply."""
    contacts = [
        Contact(name=c.name, email=c.email, **({"id": c.id} if c.id else {}))
        for c in request.mentioned_contacts
    ]
    try:
        result = await core.handle_turn(
            request.conversation_id,
            request.message,
            mentioned_contacts=contacts,
            parent_turn_id=request.parent_turn_id,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except GenerativeServiceError as e:
        logger.error("Reply generation failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Generation failed: {e}")

    return ChatResponse(
        conversation_id=request.conversation_id,
        user_turn_id=result.user_turn.id,
        model_turn_id=result.model_turn.id,
        reply=result.model_turn.content,
        latency_ms=result.assembly.latency_ms,
    )


@router.post("/conversations/{conversation_id}/link-proposal", response_model=LinkProposalResponse)
async def propose_link(
    conversation_id: str,
    core: AssistantCore = Depends(get_core),
) -> LinkProposalResponse:
    """Suggest a relationship between entities mentioned together. Nothing is stored."""
    try:
        proposal = await core.propose_link(conversation_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except GenerativeServiceError as e:
        logger.error("Link prediction failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Generation failed: {e}")

    if proposal is None:
        return LinkProposalResponse(conversation_id=conversation_id)
    return LinkProposalResponse(
        conversation_id=conversation_id,
        source=EntityRef(id=proposal.source.id, name=proposal.source.name),
        target=EntityRef(id=proposal.target.id, name=proposal.target.name),
        predicate=proposal.predicate,
        mention_count=proposal.mention_count,
    )


@router.post("/relationships", response_model=RelationshipResponse)
async def create_relationship(
    request: RelationshipCreateRequest,
    core: AssistantCore = Depends(get_core),
) -> RelationshipResponse:
    """Store an accepted link between two entities."""
    try:
        relationship = await core.accept_link(request.source_id, request.predicate, request.target_id)
    except (ValueError, TierError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RelationshipResponse(
        id=relationship.id,
        source_id=relationship.source_id,
        predicate=relationship.predicate,
        target_id=relationship.target_id,
    )


@router.post("/agent/plan", response_model=PlanResponse)
async def plan(
    request: PlanRequest,
    core: AssistantCore = Depends(get_core),
) -> PlanResponse:
    """Draft phase goals for approval. Nothing is persisted."""
    try:
        phases = await core.plan(request.goal)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SoulyCoreError as e:
        raise HTTPException(status_code=502, detail=f"Planning failed: {e}")
    return PlanResponse(goal=request.goal, phases=phases)


@router.post("/agent/runs", response_model=RunResponse, status_code=202)
async def start_run(
    request: RunCreateRequest,
    core: AssistantCore = Depends(get_core),
) -> RunResponse:
    """Create a run from an approved plan; execution continues in the background."""
    try:
        run = core.start_run(request.goal, request.phases)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RunResponse.from_run(run)


@router.get("/agent/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, core: AssistantCore = Depends(get_core)) -> RunResponse:
    run = core.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse.from_run(run)


@router.post("/agent/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(run_id: str, core: AssistantCore = Depends(get_core)) -> CancelResponse:
    if core.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return CancelResponse(run_id=run_id, cancelled=core.cancel_run(run_id))


@router.get("/experiences", response_model=list[ExperienceResponse])
async def list_experiences(
    query: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    core: AssistantCore = Depends(get_core),
) -> list[ExperienceResponse]:
    return [
        ExperienceResponse.from_experience(e)
        for e in core.list_experiences(query=query, limit=limit)
    ]


@router.get("/pipeline-runs/{run_id}", response_model=PipelineRunResponse)
async def get_pipeline_run(
    run_id: str,
    core: AssistantCore = Depends(get_core),
) -> PipelineRunResponse:
    run = core.get_pipeline_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return PipelineRunResponse.from_run(run)
