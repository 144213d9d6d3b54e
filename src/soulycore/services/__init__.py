"""SoulyCore service implementations.

``AssistantCore`` lives in ``soulycore.services.assistant`` and is not
re-exported here; it depends on the pipelines and agents that in turn
import from this package.
"""

from .background import BackgroundTaskSupervisor
from .embeddings import HashEmbeddingService, OpenAIEmbeddingService
from .generative import GenerativeService, OpenAICompatibleGenerativeService

__all__ = [
    "BackgroundTaskSupervisor",
    "HashEmbeddingService",
    "OpenAIEmbeddingService",
    "GenerativeService",
    "OpenAICompatibleGenerativeService",
]
