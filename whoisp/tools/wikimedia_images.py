"""Wikimedia Commons portrait lookup."""
from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from whoisp.config import settings
from whoisp.errors import ImageLookupError
from whoisp.models.research import PersonImage
from whoisp.models.schemas import Locale
from whoisp.services.cancellation import CancellationToken, guarded
from whoisp.tools.web_utils import strip_html

logger = logging.getLogger(__name__)

WIKIMEDIA_ENDPOINT = "https://commons.wikimedia.org/w/api.php"
MAX_IMAGES = 10
ACCEPTED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
LANGUAGE_SUFFIX: dict[str, str] = {
    "en": "profile portrait",
    "ja": "人物 ポートレート",
}

_TOKEN_SPLIT_RE = re.compile(r"[\W_]+")
_LATIN_RE = re.compile(r"[a-z]")
_FILE_PREFIX_RE = re.compile(r"^File:", re.IGNORECASE)


def user_agent() -> str:
    return f"WhoisP/1.0 (+mailto:{settings.wikimedia_contact_email})"


def tokenize(query: str) -> list[str]:
    return [t.strip().lower() for t in _TOKEN_SPLIT_RE.split(query) if t.strip()]


def _meta(info: dict[str, Any], key: str) -> str | None:
    entry = (info.get("extmetadata") or {}).get(key) or {}
    value = entry.get("value") if isinstance(entry, dict) else None
    return value if isinstance(value, str) else None


def _attribution(info: dict[str, Any]) -> str | None:
    raw = _meta(info, "Artist") or _meta(info, "Credit") or _meta(info, "Source")
    text = strip_html(raw)
    return text or None


def _title(page: dict[str, Any]) -> str:
    cleaned = _FILE_PREFIX_RE.sub("", page.get("title") or "").strip()
    return cleaned or "Untitled"


def _matching_text(page: dict[str, Any], info: dict[str, Any]) -> str:
    if not info.get("extmetadata"):
        return page.get("title") or ""
    pieces = [
        page.get("title"),
        _meta(info, "ObjectName"),
        _meta(info, "ImageDescription"),
        _meta(info, "Credit"),
    ]
    return strip_html(" \n ".join(p for p in pieces if p))


def normalize_page(
    page: dict[str, Any], tokens: list[str], *, require_token_match: bool
) -> PersonImage | None:
    infos = page.get("imageinfo") or []
    if not infos:
        return None
    info = infos[0]
    mime = (info.get("mime") or "").lower()
    if mime not in ACCEPTED_MIME_TYPES:
        return None

    full_size_url = info.get("url") or info.get("thumburl")
    thumb_url = info.get("thumburl") or info.get("url")
    source_page = info.get("descriptionurl")
    if not full_size_url or not thumb_url or not source_page:
        return None

    if require_token_match:
        haystack = _matching_text(page, info).lower()
        if not any(token in haystack for token in tokens):
            return None

    return PersonImage(
        id=f"commons-{page.get('pageid')}",
        title=_title(page),
        thumbnail_url=thumb_url,
        full_size_url=full_size_url,
        source_page=source_page,
        attribution=_attribution(info),
    )


async def fetch_person_images(
    query: str,
    locale: Locale = "en",
    *,
    http_client: httpx.AsyncClient | None = None,
    cancellation: CancellationToken | None = None,
) -> list[PersonImage]:
    """Search Commons' File namespace for portraits matching `query`.

    Raises `ImageLookupError` on non-2xx responses or API-level errors.
    """
    trimmed = query.strip()
    if not trimmed:
        return []
    tokens = tokenize(trimmed)
    if not tokens:
        return []
    require_token_match = any(_LATIN_RE.search(token) for token in tokens)

    params = {
        "action": "query",
        "format": "json",
        "generator": "search",
        "gsrlimit": "20",
        "gsrnamespace": "6",
        "gsrprop": "size|wordcount",
        "gsrsearch": f"{trimmed} {LANGUAGE_SUFFIX.get(locale, LANGUAGE_SUFFIX['en'])}".strip(),
        "prop": "imageinfo",
        "iiprop": "url|mime|extmetadata",
        "iiurlwidth": "512",
        "origin": "*",
    }
    headers = {"User-Agent": user_agent()}

    try:
        if http_client is not None:
            response = await guarded(
                http_client.get(WIKIMEDIA_ENDPOINT, params=params, headers=headers),
                cancellation,
            )
        else:
            async with httpx.AsyncClient(timeout=settings.image_search_timeout_s) as client:
                response = await guarded(
                    client.get(WIKIMEDIA_ENDPOINT, params=params, headers=headers),
                    cancellation,
                )
    except httpx.HTTPError as exc:
        raise ImageLookupError(f"Wikimedia request failed: {exc}") from exc

    if response.status_code >= 400:
        raise ImageLookupError(
            f"Wikimedia request failed with {response.status_code}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise ImageLookupError("Wikimedia returned a non-JSON response") from exc
    if not isinstance(payload, dict):
        raise ImageLookupError("Wikimedia returned an unexpected payload")
    if payload.get("error"):
        raise ImageLookupError((payload["error"] or {}).get("info") or "Wikimedia API error")

    pages = ((payload.get("query") or {}).get("pages") or {}).values()
    seen: set[str] = set()
    found: list[PersonImage] = []
    for page in pages:
        image = normalize_page(page, tokens, require_token_match=require_token_match)
        if image is None:
            continue
        key = image.full_size_url.lower()
        if key in seen:
            continue
        seen.add(key)
        found.append(image)
        if len(found) >= MAX_IMAGES:
            break

    logger.debug(f"Wikimedia returned {len(found)} images for {trimmed!r}")
    return found
