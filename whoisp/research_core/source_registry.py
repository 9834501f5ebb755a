from __future__ import annotations

from urllib.parse import urlparse

from whoisp.models.research import SourceCandidate, SourceReference
from whoisp.tools.web_utils import extract_domain


class SourceRegistry:
    """Run-wide citation catalog.

    Ids are dense, 1-based and assigned in first-registration order. A URL that
    normalizes to a known key always maps back to its original reference.
    """

    def __init__(self) -> None:
        self._by_key: dict[str, SourceReference] = {}
        self._ordered: list[SourceReference] = []

    @staticmethod
    def normalize(url: str) -> str:
        """Dedup key: scheme, host and path lower-cased; query and fragment dropped."""
        raw = url.strip()
        try:
            parsed = urlparse(raw)
        except ValueError:
            return raw.lower()
        if not parsed.scheme or not parsed.hostname:
            return raw.lower()
        path = parsed.path
        if path.endswith("/") and path != "/":
            path = path[:-1]
        return f"{parsed.scheme}://{parsed.hostname}{path}".lower()

    def register(self, candidate: SourceCandidate) -> SourceReference:
        key = self.normalize(candidate.url)
        existing = self._by_key.get(key)
        if existing is not None:
            return existing

        title = candidate.title.strip() if candidate.title else ""
        reference = SourceReference(
            id=str(len(self._ordered) + 1),
            url=candidate.url,
            title=title or candidate.url,
            domain=candidate.domain or extract_domain(candidate.url),
        )
        self._by_key[key] = reference
        self._ordered.append(reference)
        return reference

    @property
    def sources(self) -> list[SourceReference]:
        return list(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.normalize(url) in self._by_key
