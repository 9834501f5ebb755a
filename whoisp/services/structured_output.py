"""Extraction of JSON objects from model text.

Grounded calls cannot use schema-constrained output, so replies arrive as
free text that usually (but not always) holds one JSON object, sometimes
wrapped in prose or Markdown fences.
"""
from __future__ import annotations

import json
import re
from typing import Any, TypeVar

import json5
from pydantic import BaseModel, ValidationError

from whoisp.errors import StructuredOutputError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def find_balanced_object(text: str) -> str | None:
    """Return the first balanced `{...}` span, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        quote = ""
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == quote:
                    in_string = False
                continue
            if char in ('"', "'"):
                in_string = True
                quote = char
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this brace; try the next opening brace.
        start = text.find("{", start + 1)
    return None


def parse_json(
    raw: str, context: str, error: type[StructuredOutputError] = StructuredOutputError
) -> Any:
    """Strict JSON first, then a lenient JSON5 pass (trailing commas, single quotes)."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    try:
        return json5.loads(raw)
    except ValueError as exc:
        raise error(f"Failed to parse {context} JSON payload.") from exc


def extract_json_object(
    raw: str | None,
    context: str,
    error: type[StructuredOutputError] = StructuredOutputError,
) -> dict[str, Any]:
    if not raw or not raw.strip():
        raise error(f"{context} response was empty.")

    cleaned = strip_code_fences(raw)
    candidate = find_balanced_object(cleaned)
    if candidate is None:
        raise error(f"{context} response did not contain a JSON object.")

    parsed = parse_json(candidate, context, error)
    if not isinstance(parsed, dict):
        raise error(f"{context} response was not a JSON object.")
    return parsed


def parse_structured(
    raw: str | None,
    model: type[ModelT],
    context: str,
    *,
    error: type[StructuredOutputError] = StructuredOutputError,
) -> ModelT:
    """Extract the first JSON object from `raw` and validate it against `model`.

    Failures raise `error`, so each stage can report its own parse failures.
    """
    payload = extract_json_object(raw, context, error)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise error(f"{context} payload failed validation: {exc}") from exc
