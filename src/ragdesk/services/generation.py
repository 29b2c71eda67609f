"""Generation client for ragdesk."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import AsyncIterator, Literal, Protocol, Sequence, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from ragdesk.errors import DependencyError, GenerationError, ServiceUnavailableError
from ragdesk.metrics.observability import PipelineMetrics, TimedSection, get_logger
from ragdesk.resilience.breaker import CircuitBreaker, create_circuit_breaker

LOGGER = get_logger("generation")

CONTEXT_DELIMITER = "\n\n---\n\n"
NO_CONTEXT = "No relevant context found."


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    provider: Literal["template", "openai"] = "template"
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1024
    api_key: str | None = None


@dataclass(frozen=True)
class Prompt:
    text: str
    query: str
    passages: Sequence[str]


class PromptBuilder:
    """Builds the single prompt shared by one-shot and streaming generation."""

    preamble = (
        "You are a helpful AI assistant. Answer the user's question based on the provided "
        "context from their documents.\n\n"
        "If the context doesn't contain enough information to answer the question, say so "
        "clearly and suggest what additional information might be needed.\n\n"
        "Be concise but thorough. Use markdown formatting when appropriate for better readability."
    )

    def build(self, query: str, passages: Sequence[str]) -> Prompt:
        context = CONTEXT_DELIMITER.join(passages) if passages else NO_CONTEXT
        text = (
            f"{self.preamble}\n\n"
            f"CONTEXT FROM USER'S DOCUMENTS:\n{context}\n\n"
            f"USER'S QUESTION:\n{query}\n\n"
            "ANSWER:"
        )
        return Prompt(text=text, query=query, passages=list(passages))


class GenerationBackend(Protocol):
    """Protocol describing a text-generation provider."""

    async def complete(self, prompt: Prompt) -> str:
        """Return the full answer for ``prompt``."""

    def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        """Yield answer fragments for ``prompt`` in order."""


class TemplateGenerator:
    """Deterministic generator used for tests and offline environments."""

    async def complete(self, prompt: Prompt) -> str:
        if not prompt.passages:
            return "I do not have enough relevant context to answer that question."
        summary = prompt.passages[0]
        return (
            f"Summary: {summary}\n\n"
            f"Answer: Based on {len(prompt.passages)} passage(s) from your documents, "
            f"here is the best match for your question '{prompt.query}'."
        )

    async def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        text = await self.complete(prompt)
        words = text.split(" ")
        for index, word in enumerate(words):
            yield word if index == len(words) - 1 else f"{word} "


class ChatModelGenerator:
    """Generator backed by a LangChain chat model."""

    def __init__(self, model: BaseChatModel) -> None:
        self._model = model

    async def complete(self, prompt: Prompt) -> str:
        message = await self._model.ainvoke(prompt.text)
        return _content_text(message.content)

    async def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        async for chunk in self._model.astream(prompt.text):
            text = _content_text(chunk.content)
            if text:
                yield text


def _content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "".join(parts)
    return ""


def build_generation_backend(config: GenerationConfig, *, api_key: str | None = None) -> GenerationBackend:
    if config.provider == "openai" or api_key:
        model = ChatOpenAI(
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            api_key=api_key or config.api_key,
        )
        return ChatModelGenerator(model)
    LOGGER.info("generation.template_mode")
    return TemplateGenerator()


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class StreamCompleted:
    text: str


@dataclass(frozen=True)
class StreamFailed:
    error: Exception


GenerationEvent = Union[TextFragment, StreamCompleted, StreamFailed]

_END = object()


async def _next_fragment(iterator: AsyncIterator[str]) -> object:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class GenerationClient:
    """Breaker-protected access to the generation backend.

    ``stream`` yields :class:`TextFragment` values in emission order and
    finishes with exactly one :class:`StreamCompleted` or
    :class:`StreamFailed`. Fragments delivered before a failure stay
    delivered. Closing the stream stops forwarding; the provider call itself
    is only cancelled on a best-effort basis.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        breaker: CircuitBreaker,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self._backend = backend
        self._breaker = breaker
        self._prompt_builder = prompt_builder or PromptBuilder()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def with_backend(self, backend: GenerationBackend) -> "GenerationClient":
        """Client for a caller-supplied backend, with its own breaker."""

        config = replace(self._breaker.config, name=f"{self._breaker.name}-own-key")
        return GenerationClient(backend, create_circuit_breaker(config), self._prompt_builder)

    async def generate(self, query: str, passages: Sequence[str]) -> str:
        prompt = self._prompt_builder.build(query, passages)
        with TimedSection(PipelineMetrics.observe_generation):
            try:
                text = await self._breaker.call(self._backend.complete, prompt)
            except ServiceUnavailableError:
                raise
            except DependencyError as exc:
                raise GenerationError(str(exc)) from exc
            except Exception as exc:
                LOGGER.error("generation.failed", error=str(exc))
                raise GenerationError("Failed to generate response") from exc
        if not text:
            raise GenerationError("No response generated")
        return text

    async def stream(self, query: str, passages: Sequence[str]) -> AsyncIterator[GenerationEvent]:
        prompt = self._prompt_builder.build(query, passages)
        timeout = self._breaker.config.timeout_seconds
        parts: list[str] = []
        iterator: AsyncIterator[str] | None = None
        try:
            with TimedSection(PipelineMetrics.observe_generation):
                async with self._breaker.guard():
                    iterator = self._backend.stream(prompt).__aiter__()
                    while True:
                        fragment = await asyncio.wait_for(_next_fragment(iterator), timeout=timeout)
                        if fragment is _END:
                            break
                        if fragment:
                            parts.append(fragment)
                            yield TextFragment(fragment)
        except Exception as exc:
            LOGGER.error("generation.stream_failed", error=str(exc), fragments=len(parts))
            yield StreamFailed(exc)
            return
        finally:
            if iterator is not None and hasattr(iterator, "aclose"):
                await iterator.aclose()
        yield StreamCompleted("".join(parts))
