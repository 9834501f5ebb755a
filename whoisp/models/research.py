from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Immutable model serialized with camelCase keys on the stream."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PlanStep(WireModel):
    """A single focused sub-investigation of a research plan."""
    id: str  # unique within the plan, e.g. "S1"
    title: str
    query: str
    angle: str
    deliverable: str


class ResearchPlan(WireModel):
    primary_goal: str
    rationale: str
    steps: tuple[PlanStep, ...]
    expected_insights: tuple[str, ...] = ()


class SourceReference(WireModel):
    id: str  # dense, 1-based, first-registration order
    url: str
    title: str
    domain: Optional[str] = None


class StepFinding(WireModel):
    heading: str
    insight: str
    evidence: str
    confidence: Optional[str] = None
    sources: tuple[SourceReference, ...] = ()


class StepResult(WireModel):
    step_id: str
    title: str
    summary: str
    queries: tuple[str, ...] = ()
    findings: tuple[StepFinding, ...] = ()
    sources: tuple[SourceReference, ...] = ()

    @property
    def degraded(self) -> bool:
        return not self.findings and not self.sources


class DeepResearchImage(WireModel):
    url: str
    title: Optional[str] = None
    source_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    source_title: Optional[str] = None


class PersonImage(WireModel):
    id: str
    title: str
    thumbnail_url: str
    full_size_url: str
    source_page: str
    attribution: Optional[str] = None


class SourceCandidate(BaseModel):
    """A raw grounded citation before registration."""
    index: int  # provider-assigned position in the grounding metadata
    url: str
    title: str
    domain: Optional[str] = None


# --- Structured model output ---


class PayloadModel(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)


class PlanStepPayload(PayloadModel):
    id: str = Field(default="", description="Short unique step id such as S1")
    title: str = Field(default="", description="Short descriptive title")
    query: str = Field(default="", description="Focused web search intent")
    angle: str = Field(default="", description="Investigative angle or source type")
    deliverable: str = Field(default="", description="What this step must produce")


class PlanPayload(PayloadModel):
    primaryGoal: str = ""
    rationale: str = ""
    steps: list[PlanStepPayload] = Field(default_factory=list)
    expectedInsights: list[str] = Field(default_factory=list)


class EvidenceFindingPayload(PayloadModel):
    heading: str
    insight: str
    evidence: str = ""
    confidence: Optional[str] = None
    sourceIds: Optional[list[int]] = None

    @field_validator("sourceIds", mode="before")
    @classmethod
    def keep_numeric_ids(cls, value: Any) -> list[int]:
        # Ids that do not resolve to a number cannot cite anything; drop them.
        if not isinstance(value, list):
            return []
        ids: list[int] = []
        for item in value:
            try:
                ids.append(int(item))
            except (TypeError, ValueError, OverflowError):
                continue
        return ids


class EvidencePayload(PayloadModel):
    summary: str = ""
    findings: list[EvidenceFindingPayload] = Field(default_factory=list)


class SubjectPayload(PayloadModel):
    primarySubject: str = ""
