"""Embedding services.

``HashEmbeddingService`` is the default when no embedding model is wired.
It is a placeholder: vectors are deterministic per input string but carry
no semantic meaning, so similarity scores between different texts are
arbitrary. Identical texts always score 1.0 against each other.

``OpenAIEmbeddingService`` talks to any OpenAI-compatible ``/embeddings``
endpoint (OpenAI, Ollama, vLLM).
"""

import asyncio
import logging
import math
import os
import struct
from typing import Optional

import httpx

from ..interfaces import IEmbeddingService
from ..utils import normalize_embedding

logger = logging.getLogger(__name__)

PLACEHOLDER_DIMENSIONS = 768


def string_hash32(text: str) -> int:
    """Signed 32-bit rolling hash (``h = h * 31 + unit``) over UTF-16 code units.

    Characters outside the BMP contribute both surrogate halves.
    """
    encoded = text.encode("utf-16-le", "surrogatepass")
    h = 0
    for (unit,) in struct.iter_unpack("<H", encoded):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def placeholder_embedding(text: str, dimensions: int = PLACEHOLDER_DIMENSIONS) -> list[float]:
    """Project a content hash into ``dimensions`` floats via ``sin(h + i*0.1)``."""
    h = string_hash32(text)
    return [math.sin(h + i * 0.1) for i in range(dimensions)]


class HashEmbeddingService(IEmbeddingService):
    """Deterministic, non-semantic placeholder embeddings."""

    def __init__(self, dimensions: int = PLACEHOLDER_DIMENSIONS):
        if dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")
        self.dimensions = dimensions

    def __repr__(self) -> str:
        return f"HashEmbeddingService(dimensions={self.dimensions})"

    async def embed(self, text: str) -> list[float]:
        return placeholder_embedding(text, self.dimensions)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [placeholder_embedding(t, self.dimensions) for t in texts]


class OpenAIEmbeddingService(IEmbeddingService):
    """OpenAI-compatible embedding service.

    Usage:
        # OpenAI
        service = OpenAIEmbeddingService(api_key="sk-...")

        # Ollama (local, no key)
        service = OpenAIEmbeddingService(
            api_base="http://localhost:11434/v1",
            model="nomic-embed-text",
            dimensions=768,
        )
    """

    DEFAULT_MODEL = "text-embedding-3-small"
    DEFAULT_API_BASE = "https://api.openai.com/v1"
    LOCAL_API_KEY_PLACEHOLDER = "local-no-key-needed"
    MAX_INPUT_CHARS = 8191 * 4

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        dimensions: int = PLACEHOLDER_DIMENSIONS,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the embedding client.

        Args:
            api_key: API key. Falls back to OPENAI_API_KEY. Optional when
                api_base points at a non-OpenAI host.
            model: Embedding model name.
            dimensions: Requested output dimensions.
            max_retries: Attempts on 429/5xx/network errors.
            timeout_seconds: Request timeout.
            backoff_base: Base for exponential backoff between attempts.
            backoff_max: Ceiling for a single backoff delay.
            api_base: Base URL, e.g. "http://localhost:11434/v1".
            transport: Optional httpx transport (tests use MockTransport).
        """
        if dimensions < 1 or dimensions > 8192:
            raise ValueError(
                f"Dimensions must be between 1 and 8192, got {dimensions}"
            )

        self.api_url = resolve_api_url(api_base, "embeddings", self.DEFAULT_API_BASE)
        is_local = bool(api_base and api_base.strip()) and "api.openai.com" not in api_base.lower()

        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            if not is_local:
                raise ValueError(
                    "OpenAI API key required. Pass api_key "
                    "or set OPENAI_API_KEY env var."
                )
            self.api_key = self.LOCAL_API_KEY_PLACEHOLDER

        self.model = model
        self.dimensions = dimensions
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def __repr__(self) -> str:
        """Masks the API key so the object is safe to log."""
        return f"OpenAIEmbeddingService(model={self.model!r}, api_key=***)"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        client = await self._get_client()
        payload = {
            "model": self.model,
            "input": [" ".join(t.split())[: self.MAX_INPUT_CHARS] for t in texts],
            "dimensions": self.dimensions,
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            backoff = min(self.backoff_base ** attempt, self.backoff_max)
            try:
                response = await client.post(self.api_url, json=payload)
            except httpx.RequestError as e:
                last_error = e
                logger.warning("Embedding request failed (attempt %d): %s", attempt + 1, e)
                await asyncio.sleep(backoff)
                continue

            if response.status_code == 200:
                rows = sorted(response.json()["data"], key=lambda r: r["index"])
                return [normalize_embedding(r["embedding"]) for r in rows]

            if response.status_code == 429:
                retry_after = float(response.headers.get("Retry-After", backoff))
                last_error = RuntimeError("Embedding API rate limited")
                await asyncio.sleep(min(retry_after, self.backoff_max))
                continue

            if response.status_code >= 500:
                last_error = RuntimeError(f"Embedding API error ({response.status_code})")
                await asyncio.sleep(backoff)
                continue

            raise RuntimeError(
                f"Embedding API error ({response.status_code}): "
                f"{api_error_detail(response)}"
            )

        raise RuntimeError(
            f"Embedding API failed after {self.max_retries} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OpenAIEmbeddingService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def resolve_api_url(api_base: Optional[str], endpoint: str, default_base: str) -> str:
    """Build ``{base}/{endpoint}`` from an optional OpenAI-compatible base URL.

    Raises:
        ValueError: If api_base is not an HTTP(S) URL.
    """
    if api_base is None or api_base.strip() == "":
        return f"{default_base}/{endpoint}"

    base = api_base.strip().rstrip("/")
    if not base.startswith(("http://", "https://")):
        raise ValueError(f"api_base must be an HTTP(S) URL, got: {base}")
    if base.endswith(f"/{endpoint}"):
        return base
    return f"{base}/{endpoint}"


def api_error_detail(response: httpx.Response) -> str:
    """Best-effort error message from an OpenAI-style error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", response.text[:200]))
    return response.text[:200]
