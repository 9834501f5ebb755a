from __future__ import annotations

from enum import Enum
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

from whoisp.agents.evidence_gatherer import EvidenceGatherer
from whoisp.agents.planner import PlanGenerator
from whoisp.agents.synthesizer import ReportSynthesizer, plan_only_report
from whoisp.errors import ResearchCancelledError
from whoisp.llm_client import ModelClient
from whoisp.models.events import StreamEvent
from whoisp.models.research import DeepResearchImage, ResearchPlan, StepResult
from whoisp.models.schemas import Locale
from whoisp.research_core.source_registry import SourceRegistry
from whoisp.services import logger as log_service
from whoisp.services import streaming
from whoisp.services.cancellation import CancellationToken
from whoisp.services.retry import RetryPolicy
from whoisp.tools.subject_images import fetch_subject_images

ImageLookup = Callable[[str, Locale, CancellationToken], Awaitable[list[DeepResearchImage]]]


class RunPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    GATHERING = "gathering"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ResearchOrchestrator:
    """Drives one deep research run.

    Flow:
      1. Look up subject images (never fatal)
      2. Generate the research plan
      3. Fan out: gather evidence for every step concurrently
      4. Synthesize the cited report

    Events are yielded in the order images, plan, search*, final. When the
    cancellation token fires after a plan exists, the run degrades to a
    partial or plan-only report instead of failing.
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        image_lookup: ImageLookup | None = None,
        plan_policy: RetryPolicy | None = None,
        evidence_policy: RetryPolicy | None = None,
        synthesis_policy: RetryPolicy | None = None,
        partial_timeout: float | None = None,
    ):
        self.client = client
        self.run_id = uuid4().hex[:12]
        self.phase = RunPhase.IDLE
        self.image_lookup = image_lookup or self._default_image_lookup
        self.planner = PlanGenerator(client, policy=plan_policy, run_id=self.run_id)
        self.gatherer = EvidenceGatherer(client, policy=evidence_policy, run_id=self.run_id)
        self.synthesizer = ReportSynthesizer(
            client,
            policy=synthesis_policy,
            partial_timeout=partial_timeout,
            run_id=self.run_id,
        )

    async def _default_image_lookup(
        self, query: str, locale: Locale, cancellation: CancellationToken
    ) -> list[DeepResearchImage]:
        return await fetch_subject_images(
            query, locale, client=self.client, cancellation=cancellation
        )

    def _transition(self, phase: RunPhase, **data) -> None:
        self.phase = phase
        log_service.log_research_step(self.run_id, "phase", phase.value, data or None)

    async def _lookup_images(
        self, query: str, locale: Locale, cancellation: CancellationToken
    ) -> list[DeepResearchImage]:
        try:
            return await self.image_lookup(query, locale, cancellation)
        except Exception as e:
            log_service.log_event(
                event_type="image_lookup_failed",
                message="Subject image lookup failed; continuing without images",
                run_id=self.run_id,
                error=str(e),
            )
            return []

    async def _recover(
        self,
        query: str,
        plan: ResearchPlan,
        step_results: list[StepResult],
        registry: SourceRegistry,
        locale: Locale,
    ) -> str:
        self._transition(RunPhase.CANCELLED, completed_steps=len(step_results))
        if not step_results:
            return plan_only_report(query, plan, locale)
        return await self.synthesizer.synthesize(
            query,
            plan,
            step_results,
            registry.sources,
            locale=locale,
            partial=True,
        )

    async def run(
        self,
        query: str,
        *,
        locale: Locale = "en",
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        trimmed = query.strip()
        if not trimmed:
            raise ValueError("Query cannot be empty.")
        token = cancellation or CancellationToken()
        registry = SourceRegistry()

        log_service.log_event(
            event_type="research_started",
            message="Deep research run started",
            run_id=self.run_id,
            query=trimmed[:100],
            locale=locale,
            model=self.client.model,
        )

        yield streaming.images(await self._lookup_images(trimmed, locale, token))

        self._transition(RunPhase.PLANNING)
        try:
            plan = await self.planner.generate(trimmed, locale=locale, cancellation=token)
        except ResearchCancelledError:
            self._transition(RunPhase.CANCELLED)
            raise
        except Exception:
            self._transition(RunPhase.FAILED)
            raise
        yield streaming.plan_created(plan)

        self._transition(RunPhase.GATHERING, steps=len(plan.steps))
        step_results: list[StepResult] = []
        async for outcome in self.gatherer.gather_all(
            trimmed,
            plan.steps,
            locale=locale,
            register=registry.register,
            cancellation=token,
        ):
            if outcome.result is None:
                continue
            step_results.append(outcome.result)
            yield streaming.step_completed(outcome.result)

        if token.cancelled:
            report = await self._recover(trimmed, plan, step_results, registry, locale)
        else:
            self._transition(RunPhase.SYNTHESIZING)
            try:
                report = await self.synthesizer.synthesize(
                    trimmed,
                    plan,
                    step_results,
                    registry.sources,
                    locale=locale,
                    cancellation=token,
                )
            except ResearchCancelledError:
                report = await self._recover(trimmed, plan, step_results, registry, locale)
            except Exception:
                self._transition(RunPhase.FAILED)
                raise
            else:
                self._transition(RunPhase.DONE)

        yield streaming.final_report(report, registry.sources)
        log_service.log_event(
            event_type="research_completed",
            message="Deep research run finished",
            run_id=self.run_id,
            phase=self.phase.value,
            steps=len(step_results),
            degraded_steps=sum(1 for result in step_results if result.degraded),
            sources=len(registry),
        )
