"""Subject image lookup for the research header.

Resolves the query to a single subject name with one model call, then asks
Google Custom Search for images, falling back to Wikimedia Commons.
"""
from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from whoisp.config import settings
from whoisp.errors import ImageLookupError, ResearchCancelledError
from whoisp.llm_client import GenerationConfig, ModelClient
from whoisp.models.research import DeepResearchImage, SubjectPayload
from whoisp.models.schemas import Locale
from whoisp.services.cancellation import CancellationToken, guarded
from whoisp.services.prompt_store import render_prompt
from whoisp.services.structured_output import parse_structured
from whoisp.tools.web_utils import collapse_whitespace, extract_domain
from whoisp.tools.wikimedia_images import fetch_person_images

logger = logging.getLogger(__name__)

CSE_ENDPOINT = "https://www.googleapis.com/customsearch/v1"

SUBJECT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"primarySubject": {"type": "string"}},
    "required": ["primarySubject"],
}

# key -> (expires_at, value)
_image_cache: dict[str, tuple[float, list[DeepResearchImage]]] = {}
_subject_cache: dict[str, tuple[float, str]] = {}
_warned_missing_config = False


def _cache_key(locale: str, value: str) -> str:
    return f"{locale}:{value.lower()}"


def _read_cache(cache: dict[str, tuple[float, Any]], key: str) -> Any:
    entry = cache.get(key)
    if entry is None:
        return None
    expires_at, value = entry
    if time.monotonic() > expires_at:
        cache.pop(key, None)
        return None
    return value


def _write_images(locale: str, subject: str, found: list[DeepResearchImage]) -> None:
    key = _cache_key(locale, subject)
    if not found:
        _image_cache.pop(key, None)
        return
    _image_cache[key] = (time.monotonic() + settings.image_cache_ttl_s, found)


def clear_caches() -> None:
    _image_cache.clear()
    _subject_cache.clear()


async def resolve_primary_subject(
    query: str,
    locale: Locale,
    *,
    client: ModelClient,
    cancellation: CancellationToken | None = None,
) -> str:
    """Best single subject name for an image search; the raw query on failure."""
    key = _cache_key(locale, query)
    cached = _read_cache(_subject_cache, key)
    if cached:
        return cached

    prompt = render_prompt(
        "subject.prompt",
        locale_instruction=render_prompt(f"subject.locale_{'ja' if locale == 'ja' else 'en'}"),
        query=query,
    )
    try:
        response = await client.generate(
            prompt,
            GenerationConfig(
                temperature=0,
                response_schema=SUBJECT_SCHEMA,
                cancellation=cancellation,
                caller="subject_resolver",
            ),
        )
        payload = parse_structured(response.text, SubjectPayload, "subject")
        subject = collapse_whitespace(payload.primarySubject) or query
    except ResearchCancelledError:
        raise
    except Exception as e:
        logger.warning(f"Falling back to raw query for image subject {query!r}: {e}")
        subject = query

    _subject_cache[key] = (time.monotonic() + settings.subject_cache_ttl_s, subject)
    return subject


async def _wikimedia_images(
    query: str,
    locale: Locale,
    *,
    http_client: httpx.AsyncClient | None,
    cancellation: CancellationToken | None,
) -> list[DeepResearchImage]:
    try:
        found = await fetch_person_images(
            query, locale, http_client=http_client, cancellation=cancellation
        )
    except ImageLookupError as e:
        logger.error(f"Wikimedia fallback failed for {query!r}: {e}")
        return []
    return [
        DeepResearchImage(
            url=image.full_size_url,
            title=image.title,
            source_url=image.source_page,
            thumbnail_url=image.thumbnail_url,
            source_title=extract_domain(image.source_page),
        )
        for image in found
    ]


async def _attempt_fallback(
    subject: str,
    original_query: str,
    locale: Locale,
    *,
    http_client: httpx.AsyncClient | None,
    cancellation: CancellationToken | None,
) -> list[DeepResearchImage]:
    first = await _wikimedia_images(
        subject, locale, http_client=http_client, cancellation=cancellation
    )
    if first:
        _write_images(locale, subject, first)
        return first

    if subject != original_query:
        second = await _wikimedia_images(
            original_query, locale, http_client=http_client, cancellation=cancellation
        )
        if second:
            _write_images(locale, subject, second)
            return second

    logger.warning(f"No images found for subject {subject!r} or query {original_query!r}")
    _write_images(locale, subject, [])
    return []


def _parse_cse_items(payload: dict[str, Any]) -> list[DeepResearchImage]:
    seen: set[str] = set()
    found: list[DeepResearchImage] = []
    for item in payload.get("items") or []:
        url = (item.get("link") or "").strip()
        if not url or url.lower() in seen:
            continue
        seen.add(url.lower())
        meta = item.get("image") or {}
        context_link = (meta.get("contextLink") or "").strip() or None
        found.append(
            DeepResearchImage(
                url=url,
                title=(item.get("title") or "").strip() or None,
                source_url=context_link,
                thumbnail_url=(meta.get("thumbnailLink") or "").strip() or None,
                width=meta.get("width"),
                height=meta.get("height"),
                source_title=extract_domain(context_link) if context_link else None,
            )
        )
        if len(found) >= settings.max_images:
            break
    return found


async def _search_cse(
    subject: str,
    api_key: str,
    cx: str,
    *,
    http_client: httpx.AsyncClient | None,
    cancellation: CancellationToken | None,
) -> httpx.Response:
    params = {
        "key": api_key,
        "cx": cx,
        "q": subject,
        "searchType": "image",
        "num": "10",
        "safe": "active",
        "imgType": "face",
    }
    if http_client is not None:
        return await guarded(http_client.get(CSE_ENDPOINT, params=params), cancellation)
    async with httpx.AsyncClient(timeout=settings.image_search_timeout_s) as client:
        return await guarded(client.get(CSE_ENDPOINT, params=params), cancellation)


async def fetch_subject_images(
    query: str,
    locale: Locale = "en",
    *,
    client: ModelClient,
    cancellation: CancellationToken | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> list[DeepResearchImage]:
    """Images illustrating the subject of `query`.

    Provider failures fall back to Wikimedia and end in `[]`; only
    cancellation propagates.
    """
    global _warned_missing_config

    normalized = collapse_whitespace(query)
    if not normalized:
        return []
    if cancellation is not None:
        cancellation.raise_if_cancelled()

    subject = await resolve_primary_subject(
        normalized, locale, client=client, cancellation=cancellation
    )
    cached = _read_cache(_image_cache, _cache_key(locale, subject))
    if cached:
        return cached

    fallback_kwargs = {"http_client": http_client, "cancellation": cancellation}
    api_key = settings.google_cse_api_key.strip() or settings.google_api_key.strip()
    cx = settings.google_cse_cx.strip()
    if not api_key or not cx:
        if not _warned_missing_config:
            _warned_missing_config = True
            logger.warning(
                "Skipping Custom Search image lookup because GOOGLE_CSE_API_KEY "
                "or GOOGLE_CSE_CX is not configured."
            )
        return await _attempt_fallback(subject, normalized, locale, **fallback_kwargs)

    try:
        response = await _search_cse(
            subject, api_key, cx, http_client=http_client, cancellation=cancellation
        )
    except httpx.HTTPError as e:
        logger.error(f"Custom Search request failed for {subject!r}: {e}")
        return await _attempt_fallback(subject, normalized, locale, **fallback_kwargs)

    if response.status_code >= 400:
        logger.warning(
            f"Custom Search returned {response.status_code} for {subject!r}: "
            f"{response.text[:500]}"
        )
        return await _attempt_fallback(subject, normalized, locale, **fallback_kwargs)

    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning(f"Custom Search returned a non-JSON body for {subject!r}")
        return await _attempt_fallback(subject, normalized, locale, **fallback_kwargs)

    found = _parse_cse_items(payload)
    if not found:
        fallback = await _attempt_fallback(subject, normalized, locale, **fallback_kwargs)
        if fallback:
            return fallback

    logger.info(f"Fetched {len(found)} images for subject {subject!r}")
    _write_images(locale, subject, found)
    return found
