"""Exception hierarchy shared by the ragdesk services."""

from __future__ import annotations

from ragdesk.models import UsageSnapshot


class RagDeskError(RuntimeError):
    """Base class for all ragdesk failures."""


class IngestionError(RagDeskError):
    """Raised when ingestion fails for a particular document."""


class UnsupportedMediaTypeError(IngestionError):
    """Raised when no text extractor exists for a media type."""


class EmptyDocumentError(IngestionError):
    """Raised when a document yields no text or no usable chunks."""


class DependencyError(RagDeskError):
    """An external provider call failed."""


class DependencyTimeoutError(DependencyError):
    """An external provider call exceeded its per-call timeout."""


class ServiceUnavailableError(RagDeskError):
    """A circuit breaker is open and short-circuited the call."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Service '{name}' is temporarily unavailable")
        self.name = name


class GenerationError(DependencyError):
    """The generative model failed to produce an answer."""


class UsageLimitExceededError(RagDeskError):
    """The owner has used up today's generation allowance."""

    code = "DAILY_LIMIT_REACHED"

    def __init__(self, usage: UsageSnapshot) -> None:
        super().__init__(
            f"Daily message limit reached ({usage.limit} messages per day). "
            f"Resets at {usage.resets_at.isoformat()}."
        )
        self.usage = usage
