"""Model client adapters for Gemini (google-genai) and OpenRouter.

Every stage talks to a `ModelClient`; provider responses are normalized into
a single `ModelResponse` shape here and nowhere else.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from whoisp.config import Settings, settings
from whoisp.errors import ProviderError, ResearchCancelledError
from whoisp.services import logger as log_service
from whoisp.services.cancellation import CancellationToken, guarded


@dataclass
class GenerationConfig:
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    response_schema: dict[str, Any] | None = None  # JSON-schema style dict
    web_search: bool = False
    system_instruction: str | None = None
    cancellation: CancellationToken | None = None
    caller: str = "model"


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class GroundingChunk:
    index: int
    url: str
    title: str
    domain: str | None = None


@dataclass
class ModelResponse:
    text: str
    grounding: list[GroundingChunk] = field(default_factory=list)
    search_queries: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


class ModelClient:
    """Base adapter.

    `generate` refuses to start when the cancellation token already fired and
    races the provider call against it; subclasses only implement `_generate`.
    """

    name: str = "base"

    def __init__(self, model: str):
        self.model = model

    async def generate(
        self, prompt: str, config: GenerationConfig | None = None
    ) -> ModelResponse:
        config = config or GenerationConfig()
        t0 = time.monotonic()
        try:
            response = await guarded(self._generate(prompt, config), config.cancellation)
        except ResearchCancelledError:
            log_service.log_llm_call(
                model=self.model,
                caller=config.caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="cancelled",
            )
            raise
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=config.caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise

        log_service.log_llm_call(
            model=self.model,
            caller=config.caller,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return response

    async def _generate(self, prompt: str, config: GenerationConfig) -> ModelResponse:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} model={self.model}>"


def to_genai_schema(schema: dict[str, Any]) -> Any:
    """Convert a JSON-schema style dict into a google-genai `types.Schema`."""
    from google.genai import types

    kwargs: dict[str, Any] = {"type": types.Type(str(schema["type"]).upper())}
    if "description" in schema:
        kwargs["description"] = schema["description"]
    if "properties" in schema:
        kwargs["properties"] = {
            name: to_genai_schema(sub) for name, sub in schema["properties"].items()
        }
    if "required" in schema:
        kwargs["required"] = list(schema["required"])
    if "items" in schema:
        kwargs["items"] = to_genai_schema(schema["items"])
    if "minItems" in schema:
        kwargs["min_items"] = schema["minItems"]
    if "maxItems" in schema:
        kwargs["max_items"] = schema["maxItems"]
    return types.Schema(**kwargs)


class GeminiModelClient(ModelClient):
    name = "gemini"

    def __init__(self, genai_client: Any, model: str):
        super().__init__(model)
        self._client = genai_client

    @classmethod
    def from_settings(cls, cfg: Settings) -> "GeminiModelClient":
        from google import genai

        api_key = cfg.google_api_key.strip() or cfg.gemini_api_key.strip()
        if cfg.google_genai_use_vertexai:
            project = cfg.google_cloud_project.strip()
            location = cfg.google_cloud_location.strip()
            if not project or not location:
                raise ProviderError(
                    "Vertex AI mode requires GOOGLE_CLOUD_PROJECT and "
                    "GOOGLE_CLOUD_LOCATION environment variables."
                )
            genai_client = genai.Client(vertexai=True, project=project, location=location)
        else:
            if not api_key:
                raise ProviderError(
                    "Missing API key. Provide GOOGLE_API_KEY or GEMINI_API_KEY "
                    "to call the Gemini API."
                )
            genai_client = genai.Client(api_key=api_key)
        return cls(genai_client, cfg.gemini_model)

    @staticmethod
    def build_config(config: GenerationConfig) -> Any:
        from google.genai import types

        kwargs: dict[str, Any] = {}
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.top_p is not None:
            kwargs["top_p"] = config.top_p
        if config.max_output_tokens is not None:
            kwargs["max_output_tokens"] = config.max_output_tokens
        if config.system_instruction:
            kwargs["system_instruction"] = config.system_instruction
        if config.response_schema is not None:
            kwargs["response_mime_type"] = "application/json"
            kwargs["response_schema"] = to_genai_schema(config.response_schema)
        if config.web_search:
            kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        return types.GenerateContentConfig(**kwargs)

    async def _generate(self, prompt: str, config: GenerationConfig) -> ModelResponse:
        import httpx
        from google.genai import errors as genai_errors

        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self.build_config(config),
            )
        except genai_errors.APIError as exc:
            raise ProviderError(f"Gemini API error ({exc.code}): {exc.message}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini transport error: {exc}") from exc
        return self.normalize_response(response)

    @staticmethod
    def normalize_response(response: Any) -> ModelResponse:
        candidates = response.candidates or []
        metadata = candidates[0].grounding_metadata if candidates else None

        grounding: list[GroundingChunk] = []
        queries: list[str] = []
        if metadata is not None:
            for index, chunk in enumerate(metadata.grounding_chunks or []):
                web = chunk.web
                retrieved = chunk.retrieved_context
                if web is not None and web.uri:
                    grounding.append(
                        GroundingChunk(
                            index=index,
                            url=web.uri,
                            title=web.title or web.uri,
                            domain=web.domain or None,
                        )
                    )
                elif retrieved is not None and retrieved.uri:
                    grounding.append(
                        GroundingChunk(
                            index=index,
                            url=retrieved.uri,
                            title=retrieved.title or retrieved.uri,
                        )
                    )
            queries = list(metadata.web_search_queries or metadata.retrieval_queries or [])

        usage = response.usage_metadata
        return ModelResponse(
            text=response.text or "",
            grounding=grounding,
            search_queries=[q for q in queries if isinstance(q, str) and q.strip()],
            usage=Usage(
                input_tokens=(usage.prompt_token_count or 0) if usage else 0,
                output_tokens=(usage.candidates_token_count or 0) if usage else 0,
            ),
        )


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class OpenRouterModelClient(ModelClient):
    """OpenAI-compatible gateway; web search uses the gateway's `web` plugin."""

    name = "openrouter"

    def __init__(self, openai_client: Any, model: str):
        super().__init__(model)
        self._client = openai_client

    @classmethod
    def from_settings(cls, cfg: Settings) -> "OpenRouterModelClient":
        from openai import AsyncOpenAI

        if not cfg.openrouter_api_key.strip():
            raise ProviderError("OPENROUTER_API_KEY is required when MODEL_PROVIDER=openrouter.")
        base_url = cfg.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
        openai_client = AsyncOpenAI(
            api_key=cfg.openrouter_api_key,
            base_url=base_url,
        )
        return cls(openai_client, cfg.openrouter_model)

    @staticmethod
    def _temperature_for_model(model: str, requested: float | None) -> float | None:
        # Some OpenAI GPT-5-compatible gateways reject any temperature but 1.
        if "gpt-5" in (model or "").lower():
            return 1
        return requested

    @staticmethod
    def _to_openai_messages(system: str | None, prompt: str) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _generate(self, prompt: str, config: GenerationConfig) -> ModelResponse:
        import openai

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._to_openai_messages(config.system_instruction, prompt),
        }
        temperature = self._temperature_for_model(self.model, config.temperature)
        if temperature is not None:
            kwargs["temperature"] = temperature
        if config.top_p is not None:
            kwargs["top_p"] = config.top_p
        if config.max_output_tokens is not None:
            kwargs["max_tokens"] = config.max_output_tokens
        if config.response_schema is not None:
            kwargs["response_format"] = {"type": "json_object"}
        if config.web_search:
            kwargs["extra_body"] = {"plugins": [{"id": "web"}]}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as exc:
            raise ProviderError(f"OpenRouter API error: {exc}") from exc
        return self._from_openai_response(response)

    @staticmethod
    def _from_openai_response(response: Any) -> ModelResponse:
        choices = response.choices or []
        if not choices:
            raise ProviderError("OpenRouter returned no choices.")
        message = choices[0].message

        grounding: list[GroundingChunk] = []
        seen: set[str] = set()
        for annotation in _field(message, "annotations") or []:
            if _field(annotation, "type") != "url_citation":
                continue
            citation = _field(annotation, "url_citation") or {}
            url = _field(citation, "url")
            if not url or url in seen:
                continue
            seen.add(url)
            grounding.append(
                GroundingChunk(
                    index=len(grounding),
                    url=url,
                    title=_field(citation, "title") or url,
                )
            )

        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=_field(message, "content") or "",
            grounding=grounding,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )


def get_model(cfg: Settings = settings) -> str:
    """Get the active model id for the configured provider."""
    if cfg.model_provider.lower().strip() == "openrouter":
        return cfg.openrouter_model
    return cfg.gemini_model


def build_model_client(cfg: Settings = settings) -> ModelClient:
    """Construct a model client for the configured provider."""
    provider = cfg.model_provider.lower().strip()
    if provider == "gemini":
        return GeminiModelClient.from_settings(cfg)
    if provider == "openrouter":
        return OpenRouterModelClient.from_settings(cfg)
    raise ValueError(f"Unsupported MODEL_PROVIDER: {cfg.model_provider}")
