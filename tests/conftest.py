"""Pytest fixtures for SoulyCore tests."""

import pytest

from soulycore.interfaces import Conversation
from soulycore.services.audit import PipelineAuditStore
from soulycore.services.background import BackgroundTaskSupervisor
from soulycore.services.run_store import AgentRunStore
from soulycore.services.tiers import (
    DocumentMemoryTier,
    EpisodicMemoryTier,
    GraphMemoryTier,
    SemanticMemoryTier,
    StructuredMemoryTier,
    TierRegistry,
    WorkingMemoryTier,
)
from soulycore.testing import MockEmbeddingService, MockGenerativeService


@pytest.fixture
def embedding_service():
    """Deterministic placeholder embeddings."""
    return MockEmbeddingService()


@pytest.fixture
def generative():
    """Scripted generative service; queue replies with ``generative.queue``."""
    return MockGenerativeService()


@pytest.fixture
def background():
    return BackgroundTaskSupervisor()


@pytest.fixture
def episodic(background):
    tier = EpisodicMemoryTier(background=background)
    yield tier
    tier.close()


@pytest.fixture
def semantic(embedding_service):
    return SemanticMemoryTier(embedding_service)


@pytest.fixture
def structured():
    tier = StructuredMemoryTier()
    yield tier
    tier.close()


@pytest.fixture
def graph():
    tier = GraphMemoryTier()
    yield tier
    tier.close()


@pytest.fixture
def document():
    tier = DocumentMemoryTier()
    yield tier
    tier.close()


@pytest.fixture
def working():
    return WorkingMemoryTier()


@pytest.fixture
def tiers(episodic, semantic, structured, graph, document, working):
    """Registry holding every tier, each backed by an in-memory store."""
    return TierRegistry({
        "episodic": episodic,
        "semantic": semantic,
        "structured": structured,
        "graph": graph,
        "document": document,
        "working": working,
    })


@pytest.fixture
def audit():
    store = PipelineAuditStore()
    yield store
    store.close()


@pytest.fixture
def run_store():
    store = AgentRunStore()
    yield store
    store.close()


@pytest.fixture
def conversation(episodic):
    """A persisted conversation with every memory feature on."""
    return episodic.create_conversation(
        Conversation(title="Test chat", system_prompt="You are a helpful assistant.")
    )
