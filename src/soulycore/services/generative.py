"""Generative service: text generation, tool calling and embeddings.

``GenerativeService`` owns the retry policy. Subclasses implement a single
``_generate`` call against their backend and raise ``RateLimitError`` when
the backend signals rate limiting; only that error is retried.
"""

import asyncio
import json
import logging
import os
import re
from abc import abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..interfaces import (
    ExtractionParseError,
    GenerationResult,
    GenerativeServiceError,
    HistoryMessage,
    IEmbeddingService,
    IGenerativeService,
    ModelConfig,
    RateLimitError,
    ToolCall,
    ToolDeclaration,
)
from .embeddings import HashEmbeddingService, api_error_detail, resolve_api_url

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 2.0

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


class GenerativeService(IGenerativeService):
    """Base generative service with retry-on-rate-limit.

    Args:
        embedding_service: Backend for ``generate_embedding``. Defaults to
            the non-semantic ``HashEmbeddingService`` placeholder.
        max_retries: Retries after the first attempt on ``RateLimitError``.
        retry_initial_delay: First delay in seconds; doubles per retry.
        sleep: Awaitable sleep, injectable so tests can record delays.
    """

    def __init__(
        self,
        embedding_service: Optional[IEmbeddingService] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_initial_delay: float = DEFAULT_INITIAL_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.embedding_service = embedding_service or HashEmbeddingService()
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay
        self._sleep = sleep or asyncio.sleep

    @abstractmethod
    async def _generate(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig],
        tools: Optional[list[ToolDeclaration]],
    ) -> GenerationResult:
        """Single backend call without retries."""
        pass

    async def generate_content(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig] = None,
        tools: Optional[list[ToolDeclaration]] = None,
    ) -> GenerationResult:
        attempt = 0
        while True:
            try:
                return await self._generate(history, system_instruction, config, tools)
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Generation still rate limited after %d retries", self.max_retries
                    )
                    raise
                delay = self.retry_initial_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Rate limited (%s); retry %d/%d in %.1fs",
                    e, attempt, self.max_retries, delay,
                )
                await self._sleep(delay)

    async def generate_text(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig] = None,
    ) -> str:
        result = await self.generate_content(history, system_instruction, config)
        return result.text or ""

    async def generate_with_tools(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        tools: list[ToolDeclaration],
        config: Optional[ModelConfig] = None,
    ) -> GenerationResult:
        return await self.generate_content(history, system_instruction, config, tools)

    async def generate_structured(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        response_model: type[ModelT],
        config: Optional[ModelConfig] = None,
    ) -> ModelT:
        """Generate JSON and validate it against ``response_model``.

        Raises:
            ExtractionParseError: The reply was not valid JSON for the model.
        """
        json_config = ModelConfig(
            model=config.model if config else None,
            temperature=config.temperature if config else None,
            top_p=config.top_p if config else None,
            json_output=True,
        )
        text = await self.generate_text(history, system_instruction, json_config)
        return parse_structured(text, response_model)

    async def generate_embedding(self, text: str) -> list[float]:
        return await self.embedding_service.embed(text)


def parse_structured(text: str, response_model: type[ModelT]) -> ModelT:
    """Validate a JSON reply, tolerating a surrounding markdown code fence."""
    cleaned = _CODE_FENCE_RE.sub("", text.strip())
    try:
        return response_model.model_validate_json(cleaned)
    except ValidationError as e:
        raise ExtractionParseError(
            f"{response_model.__name__} validation failed: {e.error_count()} error(s)"
        ) from e


class OpenAICompatibleGenerativeService(GenerativeService):
    """Chat-completions client for OpenAI and compatible servers.

    Usage:
        service = OpenAICompatibleGenerativeService(api_key="sk-...")

        # Ollama
        service = OpenAICompatibleGenerativeService(
            api_base="http://localhost:11434/v1", model="llama3.1",
        )
    """

    DEFAULT_MODEL = "gpt-4o-mini"
    DEFAULT_API_BASE = "https://api.openai.com/v1"
    LOCAL_API_KEY_PLACEHOLDER = "local-no-key-needed"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        api_base: Optional[str] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_url = resolve_api_url(api_base, "chat/completions", self.DEFAULT_API_BASE)
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
        self.temperature = temperature
        self.top_p = top_p
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def __repr__(self) -> str:
        return f"OpenAICompatibleGenerativeService(model={self.model!r}, api_key=***)"

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

    def _build_payload(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig],
        tools: Optional[list[ToolDeclaration]],
    ) -> dict:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        for message in history:
            role = "assistant" if message.role == "model" else "user"
            messages.append({"role": role, "content": message.content})

        config = config or ModelConfig()
        payload: dict = {"model": config.model or self.model, "messages": messages}
        temperature = config.temperature if config.temperature is not None else self.temperature
        top_p = config.top_p if config.top_p is not None else self.top_p
        if temperature is not None:
            payload["temperature"] = temperature
        if top_p is not None:
            payload["top_p"] = top_p
        if config.json_output:
            payload["response_format"] = {"type": "json_object"}
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
        return payload

    async def _generate(
        self,
        history: list[HistoryMessage],
        system_instruction: str,
        config: Optional[ModelConfig],
        tools: Optional[list[ToolDeclaration]],
    ) -> GenerationResult:
        client = await self._get_client()
        payload = self._build_payload(history, system_instruction, config, tools)
        try:
            response = await client.post(self.api_url, json=payload)
        except httpx.RequestError as e:
            raise GenerativeServiceError(f"Generation request failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                api_error_detail(response),
                retry_after=float(retry_after) if retry_after else None,
            )
        if response.status_code != 200:
            raise GenerativeServiceError(
                f"Generation API error ({response.status_code}): "
                f"{api_error_detail(response)}"
            )
        return self._parse_response(response.json())

    @staticmethod
    def _parse_response(data: dict) -> GenerationResult:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerativeServiceError(f"Malformed generation response: {e}") from e

        tool_call = None
        calls = message.get("tool_calls") or []
        if calls:
            function = calls[0].get("function", {})
            raw_args = function.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except json.JSONDecodeError:
                args = {"raw": raw_args}
            tool_call = ToolCall(name=function.get("name", ""), args=args)

        return GenerationResult(text=message.get("content"), tool_call=tool_call)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        close = getattr(self.embedding_service, "close", None)
        if close is not None and asyncio.iscoroutinefunction(close):
            await close()
