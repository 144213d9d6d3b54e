"""FastEmbed embedding service.

Local ONNX embeddings, no API key. Install with ``pip install soulycore[fastembed]``.
The placeholder hash embedder uses 768 dimensions, so the default model here
is the 768-dim bge-base to keep LanceDB tables interchangeable.
"""

import asyncio
import logging
from typing import Optional

from ..interfaces import IEmbeddingService
from ..utils import normalize_embedding

logger = logging.getLogger(__name__)

_MODEL_DIMENSIONS: dict[str, int] = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "nomic-ai/nomic-embed-text-v1.5": 768,
}

DEFAULT_MODEL = "BAAI/bge-base-en-v1.5"


class FastEmbedService(IEmbeddingService):
    """Local embedding service; the model loads lazily on first use."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        cache_dir: Optional[str] = None,
    ):
        if dimensions is not None and dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")
        self.model_name = model
        self.dimensions = dimensions or _MODEL_DIMENSIONS.get(model, 768)
        self._cache_dir = cache_dir
        self._model = None

    def __repr__(self) -> str:
        return f"FastEmbedService(model={self.model_name!r}, dimensions={self.dimensions})"

    def _get_model(self):
        if self._model is None:
            from fastembed import TextEmbedding

            kwargs: dict = {"model_name": self.model_name}
            if self._cache_dir is not None:
                kwargs["cache_dir"] = self._cache_dir
            self._model = TextEmbedding(**kwargs)
            logger.info("FastEmbed model loaded: %s (%d dims)", self.model_name, self.dimensions)
        return self._model

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        return [normalize_embedding(vec.tolist()) for vec in model.embed(texts)]

    async def embed(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        # ONNX inference is CPU-bound; keep it off the event loop.
        return await asyncio.to_thread(self._embed_sync, texts)
