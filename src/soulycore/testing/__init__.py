"""Testing utilities for SoulyCore."""

from .mocks import (
    BlockingGenerativeService,
    GenerationCall,
    MockEmbeddingService,
    MockGenerativeService,
    MockToolExecutor,
    RecordingTier,
    finish,
    tool_call,
)

__all__ = [
    "BlockingGenerativeService",
    "GenerationCall",
    "MockEmbeddingService",
    "MockGenerativeService",
    "MockToolExecutor",
    "RecordingTier",
    "finish",
    "tool_call",
]
