from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, Sequence, runtime_checkable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_random_exponential

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(slots=True)
class LLMUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(slots=True)
class LLMResult:
    text: str
    usage: LLMUsage | None = None


@runtime_checkable
class LLMCapability(Protocol):
    """Text-in, text-out model capability consumed by the handlers."""

    async def generate(self, prompt: str, *, temperature: float | None = None) -> str:
        ...


class LLMUnavailableError(RuntimeError):
    """Raised when every attempt to reach the model failed."""


def _build_base_url(host: str, port: int) -> str:
    trimmed = host.rstrip("/")
    if ":" in trimmed.rsplit("/", maxsplit=1)[-1]:
        return trimmed
    return f"{trimmed}:{port}"


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def usage_total(result: LLMResult) -> int | None:
    if result.usage is None:
        return None
    return result.usage.total_tokens


async def generate_tracked(
    llm: LLMCapability,
    prompt: str,
    *,
    temperature: float | None = None,
) -> LLMResult:
    """Prefer ``generate_with_usage`` when the capability offers it."""
    with_usage = getattr(llm, "generate_with_usage", None)
    if with_usage is not None:
        return await with_usage(prompt, temperature=temperature)
    text = await llm.generate(prompt, temperature=temperature)
    return LLMResult(text=text)


@dataclass
class LLMService:
    """LangChain client for a local Ollama model with bounded retries."""

    settings: Settings
    _client: Any
    model: str
    default_system_prompt: str | None = None
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.llm.model
        if client is None:
            cache_key = f"{settings.llm.host}:{settings.llm.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                base_url = _build_base_url(settings.llm.host, settings.llm.port)
                cached = ChatOllama(
                    model=model_name,
                    base_url=base_url,
                    temperature=settings.llm.default_temperature,
                )
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    async def generate(self, prompt: str, *, temperature: float | None = None) -> str:
        result = await self.generate_with_usage(prompt, temperature=temperature)
        return result.text

    async def generate_with_usage(self, prompt: str, *, temperature: float | None = None) -> LLMResult:
        """Invoke the model and report token usage when Ollama returns it."""
        messages = _messages_from_text(prompt, self.default_system_prompt)
        client = self._client
        if temperature is not None and hasattr(client, "bind"):
            client = client.bind(temperature=temperature)

        timeout = self.settings.llm.request_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.llm.max_retries),
                wait=wait_random_exponential(multiplier=0.5, max=10),
                reraise=False,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "llm_generation_retry",
                            attempt=attempt.retry_state.attempt_number,
                            model=self.model,
                        )
                    result = await asyncio.wait_for(client.ainvoke(messages), timeout=timeout)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error(
                "llm_generation_failed",
                error=str(last),
                model=self.model,
                host=self.settings.llm.host,
            )
            raise LLMUnavailableError(f"LLM generation failed: {last}") from last
        return LLMResult(text=_extract_content(result), usage=_extract_usage(result))


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)


def _extract_usage(result: Any) -> LLMUsage | None:
    metadata = getattr(result, "usage_metadata", None)
    if not metadata:
        return None
    return LLMUsage(
        prompt_tokens=metadata.get("input_tokens"),
        completion_tokens=metadata.get("output_tokens"),
        total_tokens=metadata.get("total_tokens"),
    )
