from __future__ import annotations

from typing import Callable

from whoisp.agents.orchestrator import ResearchOrchestrator
from whoisp.llm_client import build_model_client

OrchestratorFactory = Callable[[], ResearchOrchestrator]


def create_orchestrator() -> ResearchOrchestrator:
    """Build a fresh orchestrator around an explicitly constructed model client.

    Credential problems surface as `ProviderError` from here.
    """
    return ResearchOrchestrator(build_model_client())


def get_orchestrator_factory() -> OrchestratorFactory:
    return create_orchestrator
