from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import AsyncIterator, Callable, Iterable

from whoisp.config import settings
from whoisp.errors import EvidenceParseError, ResearchCancelledError
from whoisp.llm_client import GenerationConfig, GroundingChunk, ModelClient
from whoisp.models.research import (
    EvidencePayload,
    PlanStep,
    SourceCandidate,
    SourceReference,
    StepFinding,
    StepResult,
)
from whoisp.models.schemas import Locale
from whoisp.services import logger as log_service
from whoisp.services.cancellation import CancellationToken
from whoisp.services.prompt_store import render_localized, render_prompt
from whoisp.services.retry import RetryExhausted, RetryPolicy, run_with_retry
from whoisp.services.structured_output import parse_structured

RegisterSource = Callable[[SourceCandidate], SourceReference]


@dataclass(slots=True)
class StepOutcome:
    """How one plan step ended. `result` is None only when cancelled."""

    step: PlanStep
    result: StepResult | None = None
    cancelled: bool = False


def extract_citations(grounding: Iterable[GroundingChunk]) -> list[SourceCandidate]:
    """De-duplicate grounding chunks by lower-cased URL, keeping the first index."""
    seen: dict[str, SourceCandidate] = {}
    for chunk in grounding:
        key = chunk.url.lower()
        if key in seen:
            continue
        seen[key] = SourceCandidate(
            index=chunk.index, url=chunk.url, title=chunk.title, domain=chunk.domain
        )
    return list(seen.values())


def _unique_by_id(refs: Iterable[SourceReference]) -> list[SourceReference]:
    unique: dict[str, SourceReference] = {}
    for ref in refs:
        unique.setdefault(ref.id, ref)
    return list(unique.values())


class EvidenceGatherer:
    """Runs one grounded web-research call per plan step."""

    name = "evidence"

    def __init__(
        self,
        client: ModelClient,
        *,
        policy: RetryPolicy | None = None,
        run_id: str = "",
    ):
        self.client = client
        self.policy = policy or RetryPolicy(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_s,
            timeout=settings.evidence_timeout_s,
        )
        self.run_id = run_id

    @staticmethod
    def build_prompt(query: str, step: PlanStep, locale: Locale) -> str:
        return render_localized(
            "evidence.instruction",
            locale,
            today=date.today().isoformat(),
            step_id=step.id,
            query=query,
            step_query=step.query,
            deliverable=step.deliverable,
        )

    async def _attempt(
        self,
        prompt: str,
        step: PlanStep,
        register: RegisterSource,
        cancellation: CancellationToken | None,
    ) -> StepResult:
        response = await self.client.generate(
            prompt,
            GenerationConfig(
                temperature=0.35,
                top_p=0.9,
                max_output_tokens=2048,
                web_search=True,
                system_instruction=render_prompt("evidence.system_prompt"),
                cancellation=cancellation,
                caller=f"{self.name}:{step.id}",
            ),
        )
        payload = parse_structured(
            response.text,
            EvidencePayload,
            f"evidence for step {step.id}",
            error=EvidenceParseError,
        )

        # Citations are registered only once the payload is valid.
        index_to_source: dict[int, SourceReference] = {}
        for citation in extract_citations(response.grounding):
            index_to_source[citation.index] = register(citation)

        findings: list[StepFinding] = []
        for finding in payload.findings:
            refs = [
                index_to_source[source_id - 1]
                for source_id in finding.sourceIds or []
                if source_id - 1 in index_to_source
            ]
            confidence = (finding.confidence or "").strip()
            findings.append(
                StepFinding(
                    heading=finding.heading.strip(),
                    insight=finding.insight.strip(),
                    evidence=finding.evidence.strip(),
                    confidence=confidence or None,
                    sources=tuple(_unique_by_id(refs)),
                )
            )

        return StepResult(
            step_id=step.id,
            title=step.title,
            summary=payload.summary.strip(),
            queries=tuple(response.search_queries),
            findings=tuple(findings),
            sources=tuple(
                _unique_by_id(ref for finding in findings for ref in finding.sources)
            ),
        )

    async def gather(
        self,
        query: str,
        step: PlanStep,
        *,
        locale: Locale = "en",
        register: RegisterSource,
        cancellation: CancellationToken | None = None,
    ) -> StepResult:
        """Evidence for one step.

        Exhausted retries yield a degraded result with no findings; only
        `ResearchCancelledError` escapes.
        """
        prompt = self.build_prompt(query, step, locale)
        try:
            result = await run_with_retry(
                lambda: self._attempt(prompt, step, register, cancellation),
                policy=self.policy,
                label=f"Evidence for step {step.id}",
                cancellation=cancellation,
            )
        except RetryExhausted as exc:
            log_service.log_research_step(
                self.run_id,
                "evidence",
                "degraded",
                {"step_id": step.id, "error": str(exc.last_error)},
            )
            return StepResult(
                step_id=step.id,
                title=step.title,
                summary=(
                    f"Evidence collection failed after {exc.attempts} attempts: "
                    f"{exc.last_error}"
                ),
            )

        log_service.log_research_step(
            self.run_id,
            "evidence",
            "completed",
            {
                "step_id": step.id,
                "findings": len(result.findings),
                "sources": len(result.sources),
            },
        )
        return result

    async def gather_all(
        self,
        query: str,
        steps: Iterable[PlanStep],
        *,
        locale: Locale = "en",
        register: RegisterSource,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[StepOutcome]:
        """Run every step concurrently and yield outcomes in completion order."""

        async def run_one(step: PlanStep) -> StepOutcome:
            try:
                result = await self.gather(
                    query, step, locale=locale, register=register, cancellation=cancellation
                )
            except ResearchCancelledError:
                log_service.log_research_step(
                    self.run_id, "evidence", "cancelled", {"step_id": step.id}
                )
                return StepOutcome(step=step, cancelled=True)
            return StepOutcome(step=step, result=result)

        tasks = [asyncio.ensure_future(run_one(step)) for step in steps]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
