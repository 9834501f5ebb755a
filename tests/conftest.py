from __future__ import annotations

import inspect
import json
from typing import Any, Callable

import pytest

from whoisp.llm_client import GenerationConfig, GroundingChunk, ModelClient, ModelResponse
from whoisp.services.retry import RetryPolicy
from whoisp.tools import subject_images

Handler = Callable[[str, GenerationConfig], Any]


class ScriptedModelClient(ModelClient):
    """Fake model client that dispatches on the caller label of each call.

    Handlers may return a `ModelResponse`, a plain string, an exception to
    raise, or an awaitable producing any of those.
    """

    name = "scripted"

    def __init__(self, handlers: dict[str, Handler]):
        super().__init__("scripted-model")
        self.handlers = handlers
        self.calls: list[tuple[str, GenerationConfig]] = []

    def calls_for(self, caller: str) -> list[tuple[str, GenerationConfig]]:
        return [c for c in self.calls if c[1].caller.split(":")[0] == caller]

    async def _generate(self, prompt: str, config: GenerationConfig) -> ModelResponse:
        self.calls.append((prompt, config))
        handler = self.handlers[config.caller.split(":")[0]]
        result = handler(prompt, config)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, str):
            return ModelResponse(text=result)
        return result


def step_id_of(config: GenerationConfig) -> str:
    return config.caller.split(":", 1)[1]


def plan_json(step_count: int = 3, **overrides: Any) -> str:
    payload = {
        "primaryGoal": "Profile the subject",
        "rationale": "Cover biography, work and legacy",
        "steps": [
            {
                "id": f"S{i}",
                "title": f"Step {i}",
                "query": f"query {i}",
                "angle": f"angle {i}",
                "deliverable": f"deliverable {i}",
            }
            for i in range(1, step_count + 1)
        ],
        "expectedInsights": ["Key dates", "Major works"],
    }
    payload.update(overrides)
    return json.dumps(payload)


def evidence_response(step_id: str, urls: list[str] | None = None) -> ModelResponse:
    urls = urls if urls is not None else [f"https://example.com/{step_id.lower()}"]
    text = json.dumps(
        {
            "summary": f"Summary for {step_id}",
            "findings": [
                {
                    "heading": f"Finding {step_id}",
                    "insight": f"Insight from {step_id}",
                    "evidence": "Quoted evidence",
                    "sourceIds": list(range(1, len(urls) + 1)),
                }
            ],
        }
    )
    return ModelResponse(
        text=text,
        grounding=[
            GroundingChunk(index=i, url=url, title=f"Title {url}")
            for i, url in enumerate(urls)
        ],
        search_queries=[f"search for {step_id}"],
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=0, timeout=None)


@pytest.fixture(autouse=True)
def _clear_image_caches():
    subject_images.clear_caches()
    yield
    subject_images.clear_caches()
