from __future__ import annotations

from typing import List

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import FakeClock, ScriptedBackend, make_breaker
from ragdesk.errors import GenerationError, ServiceUnavailableError
from ragdesk.services import (
    ChatModelGenerator,
    GenerationClient,
    PromptBuilder,
    StreamCompleted,
    StreamFailed,
    TemplateGenerator,
    TextFragment,
)
from ragdesk.services.generation import CONTEXT_DELIMITER, NO_CONTEXT


async def _collect(client: GenerationClient, passages: List[str] | None = None) -> list:
    return [event async for event in client.stream("what?", passages or ["ctx"])]


def test_prompt_contains_context_question_and_answer_marker():
    prompt = PromptBuilder().build("Why is the sky blue?", ["passage one", "passage two"])

    assert f"passage one{CONTEXT_DELIMITER}passage two" in prompt.text
    assert "CONTEXT FROM USER'S DOCUMENTS:" in prompt.text
    assert "USER'S QUESTION:\nWhy is the sky blue?" in prompt.text
    assert prompt.text.endswith("ANSWER:")


def test_prompt_without_passages_says_so():
    prompt = PromptBuilder().build("anything?", [])
    assert NO_CONTEXT in prompt.text


@pytest.mark.asyncio
async def test_template_generator_streams_its_complete_answer():
    generator = TemplateGenerator()
    prompt = PromptBuilder().build("What is alpha?", ["Alpha is first."])

    complete = await generator.complete(prompt)
    streamed = "".join([fragment async for fragment in generator.stream(prompt)])

    assert streamed == complete
    assert "Alpha is first." in complete


@pytest.mark.asyncio
async def test_chat_model_generator_uses_langchain_model():
    generator = ChatModelGenerator(FakeListChatModel(responses=["grounded answer", "grounded answer"]))
    prompt = PromptBuilder().build("q", ["ctx"])

    assert await generator.complete(prompt) == "grounded answer"
    assert "".join([fragment async for fragment in generator.stream(prompt)]) == "grounded answer"


@pytest.mark.asyncio
async def test_generate_returns_backend_text():
    backend = ScriptedBackend(["Hello ", "world"])
    client = GenerationClient(backend, make_breaker("generation"))

    assert await client.generate("what?", ["ctx"]) == "Hello world"
    assert "ctx" in backend.prompts[0].text


@pytest.mark.asyncio
async def test_generate_wraps_backend_failures():
    client = GenerationClient(ScriptedBackend([], error=RuntimeError("quota")), make_breaker("generation"))

    with pytest.raises(GenerationError):
        await client.generate("what?", ["ctx"])


@pytest.mark.asyncio
async def test_empty_answer_is_an_error():
    client = GenerationClient(ScriptedBackend([]), make_breaker("generation"))

    with pytest.raises(GenerationError):
        await client.generate("what?", ["ctx"])


@pytest.mark.asyncio
async def test_stream_yields_fragments_then_completion():
    client = GenerationClient(ScriptedBackend(["The ", "answer ", "is 42."]), make_breaker("generation"))

    events = await _collect(client)

    assert events == [
        TextFragment("The "),
        TextFragment("answer "),
        TextFragment("is 42."),
        StreamCompleted("The answer is 42."),
    ]


@pytest.mark.asyncio
async def test_mid_stream_failure_keeps_delivered_fragments():
    backend = ScriptedBackend(["partial ", "text"], error=RuntimeError("connection reset"))
    breaker = make_breaker("generation")
    client = GenerationClient(backend, breaker)

    events = await _collect(client)

    assert events[:2] == [TextFragment("partial "), TextFragment("text")]
    assert isinstance(events[2], StreamFailed)
    assert len(events) == 3
    assert breaker.stats()["stats"]["failures"] == 1


@pytest.mark.asyncio
async def test_stalled_stream_times_out():
    breaker = make_breaker("generation", timeout_seconds=0.05)
    client = GenerationClient(ScriptedBackend(["slow "], stall=1.0), breaker)

    events = await _collect(client)

    assert events[0] == TextFragment("slow ")
    assert isinstance(events[-1], StreamFailed)
    assert breaker.stats()["stats"]["timeouts"] == 1


@pytest.mark.asyncio
async def test_open_breaker_fails_stream_without_calling_backend(clock: FakeClock):
    breaker = make_breaker("generation", clock=clock, volume_threshold=1)
    backend = ScriptedBackend([], error=RuntimeError("down"))
    client = GenerationClient(backend, breaker)
    with pytest.raises(GenerationError):
        await client.generate("what?", ["ctx"])

    events = await _collect(client)

    assert len(events) == 1
    assert isinstance(events[0], StreamFailed)
    assert isinstance(events[0].error, ServiceUnavailableError)
    assert len(backend.prompts) == 1


@pytest.mark.asyncio
async def test_own_backend_gets_its_own_breaker():
    client = GenerationClient(ScriptedBackend(["shared"]), make_breaker("generation"))
    own = client.with_backend(ScriptedBackend(["mine"]))

    assert own.breaker.name == "generation-own-key"
    assert own.breaker is not client.breaker
    assert await own.generate("q", ["ctx"]) == "mine"
