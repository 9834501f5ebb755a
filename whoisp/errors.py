"""Error taxonomy for the deep research pipeline."""
from __future__ import annotations


class DeepResearchError(Exception):
    """Base class for pipeline errors."""


class ProviderError(DeepResearchError):
    """Transport, auth, quota or configuration failure of the model provider."""


class StageTimeoutError(DeepResearchError, TimeoutError):
    """A single stage attempt exceeded its time budget."""


class ResearchCancelledError(DeepResearchError):
    """The run's cancellation token fired. Never retried."""


class PlanningError(DeepResearchError):
    pass


class StructuredOutputError(DeepResearchError):
    """Model output held no valid JSON object for the expected shape."""


class EvidenceParseError(StructuredOutputError):
    pass


class SynthesisError(DeepResearchError):
    pass


class ImageLookupError(DeepResearchError):
    """Upstream image API failure; `status_code` is the HTTP status when known."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
