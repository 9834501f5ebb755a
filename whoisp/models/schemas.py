from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, field_validator

Locale = Literal["en", "ja"]


def normalize_locale(value: object) -> Locale:
    return "ja" if value == "ja" else "en"


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str
    locale: Locale = "en"

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Query is required")
        return value

    @field_validator("locale", mode="before")
    @classmethod
    def coerce_locale(cls, value: object) -> Locale:
        return normalize_locale(value)


class PersonImagesRequest(BaseModel):
    query: str = ""
    locale: Locale = "en"

    @field_validator("locale", mode="before")
    @classmethod
    def coerce_locale(cls, value: object) -> Locale:
        return normalize_locale(value)


# --- Responses ---


class ErrorResponse(BaseModel):
    error: str
