from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    STATUS = "status"
    IMAGES = "images"
    PLAN = "plan"
    SEARCH = "search"
    FINAL = "final"
    DONE = "done"
    ERROR = "error"


@dataclass
class StreamEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event.value, **self.data}

    def format(self) -> str:
        """One NDJSON line."""
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"
