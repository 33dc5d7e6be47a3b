from __future__ import annotations

import pytest
from langchain_core.messages import AIMessage

from medicagent.core.config import get_settings
from medicagent.services.llm import LLMService, LLMUnavailableError, _build_base_url, generate_tracked
from medicagent.utils.json_extract import JSONExtractionError, extract_json_array, extract_json_object
from tests.helpers.stubs import StubLLM


class FakeChatClient:
    def __init__(self, *, reply: AIMessage | None = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.bound: list[float] = []
        self.calls = 0

    def bind(self, *, temperature: float) -> "FakeChatClient":
        self.bound.append(temperature)
        return self

    async def ainvoke(self, messages):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


def test_base_url_keeps_explicit_port() -> None:
    assert _build_base_url("http://localhost", 11434) == "http://localhost:11434"
    assert _build_base_url("http://ollama:9999/", 11434) == "http://ollama:9999"


@pytest.mark.asyncio
async def test_generate_with_usage_reads_usage_metadata() -> None:
    reply = AIMessage(
        content="hello",
        usage_metadata={"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
    )
    client = FakeChatClient(reply=reply)
    service = LLMService.from_settings(get_settings(), client=client)

    result = await service.generate_with_usage("hi", temperature=0.2)

    assert result.text == "hello"
    assert result.usage.total_tokens == 5
    assert client.bound == [0.2]


@pytest.mark.asyncio
async def test_generation_failure_raises_after_retries() -> None:
    settings = get_settings({"llm": {"max_retries": 1}})
    client = FakeChatClient(error=ConnectionError("refused"))
    service = LLMService.from_settings(settings, client=client)

    with pytest.raises(LLMUnavailableError):
        await service.generate("hi")
    assert client.calls == 1


@pytest.mark.asyncio
async def test_generate_tracked_without_usage_support() -> None:
    result = await generate_tracked(StubLLM(["plain"]), "prompt")

    assert result.text == "plain"
    assert result.usage is None


def test_json_extraction_from_chatty_output() -> None:
    assert extract_json_object('Sure! {"intent": "health.advice"} Hope that helps.') == {"intent": "health.advice"}
    assert extract_json_array('Agents: ["appointment", "notification"]') == ["appointment", "notification"]
    with pytest.raises(JSONExtractionError):
        extract_json_object('["not", "an", "object"]')
    with pytest.raises(JSONExtractionError):
        extract_json_array("no brackets here")
