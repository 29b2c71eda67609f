"""Service layer orchestrations for ragdesk."""

from .generation import (
    ChatModelGenerator,
    GenerationBackend,
    GenerationClient,
    GenerationConfig,
    PromptBuilder,
    StreamCompleted,
    StreamFailed,
    TemplateGenerator,
    TextFragment,
    build_generation_backend,
)
from .query import NO_RESULTS_ANSWER, QueryConfig, QueryOrchestrator

__all__ = [
    "ChatModelGenerator",
    "GenerationBackend",
    "GenerationClient",
    "GenerationConfig",
    "NO_RESULTS_ANSWER",
    "PromptBuilder",
    "QueryConfig",
    "QueryOrchestrator",
    "StreamCompleted",
    "StreamFailed",
    "TemplateGenerator",
    "TextFragment",
    "build_generation_backend",
]
