from __future__ import annotations

from typing import Iterable

from whoisp.models.events import EventType, StreamEvent
from whoisp.models.research import (
    DeepResearchImage,
    ResearchPlan,
    SourceReference,
    StepResult,
)


def status(value: str) -> StreamEvent:
    return StreamEvent(event=EventType.STATUS, data={"status": value})


def images(found: Iterable[DeepResearchImage]) -> StreamEvent:
    return StreamEvent(
        event=EventType.IMAGES,
        data={"images": [image.to_wire() for image in found]},
    )


def plan_created(plan: ResearchPlan) -> StreamEvent:
    """Emit the research plan once it has been generated."""
    return StreamEvent(event=EventType.PLAN, data={"plan": plan.to_wire()})


def step_completed(result: StepResult) -> StreamEvent:
    return StreamEvent(event=EventType.SEARCH, data={"step": result.to_wire()})


def final_report(report: str, sources: Iterable[SourceReference]) -> StreamEvent:
    return StreamEvent(
        event=EventType.FINAL,
        data={
            "report": report,
            "sources": [source.to_wire() for source in sources],
        },
    )


def done() -> StreamEvent:
    return StreamEvent(event=EventType.DONE)


def error(message: str) -> StreamEvent:
    return StreamEvent(event=EventType.ERROR, data={"message": message})
