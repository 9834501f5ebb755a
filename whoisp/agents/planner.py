from __future__ import annotations

from datetime import date
from typing import Any

from whoisp.config import settings
from whoisp.errors import PlanningError
from whoisp.llm_client import GenerationConfig, ModelClient
from whoisp.models.research import PlanPayload, PlanStep, ResearchPlan
from whoisp.models.schemas import Locale
from whoisp.services import logger as log_service
from whoisp.services.cancellation import CancellationToken
from whoisp.services.prompt_store import render_localized, render_prompt
from whoisp.services.retry import RetryExhausted, RetryPolicy, run_with_retry
from whoisp.services.structured_output import parse_structured

PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["primaryGoal", "rationale", "steps", "expectedInsights"],
    "properties": {
        "primaryGoal": {"type": "string"},
        "rationale": {"type": "string"},
        "steps": {
            "type": "array",
            "minItems": 3,
            "maxItems": 6,
            "items": {
                "type": "object",
                "required": ["id", "title", "query", "angle", "deliverable"],
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "query": {"type": "string"},
                    "angle": {"type": "string"},
                    "deliverable": {"type": "string"},
                },
            },
        },
        "expectedInsights": {"type": "array", "items": {"type": "string"}},
    },
}


def build_plan(query: str, payload: PlanPayload) -> ResearchPlan:
    """Normalize a validated payload into a plan with unique, non-empty step ids."""
    steps: list[PlanStep] = []
    used_ids: set[str] = set()
    for index, raw in enumerate(payload.steps):
        base_id = raw.id.strip() or f"S{index + 1}"
        step_id = base_id
        suffix = 2
        while step_id in used_ids:
            step_id = f"{base_id}-{suffix}"
            suffix += 1
        used_ids.add(step_id)
        steps.append(
            PlanStep(
                id=step_id,
                title=raw.title.strip(),
                query=raw.query.strip(),
                angle=raw.angle.strip(),
                deliverable=raw.deliverable.strip(),
            )
        )

    if not steps:
        raise PlanningError("Plan generation did not return any steps.")

    return ResearchPlan(
        primary_goal=payload.primaryGoal.strip() or query,
        rationale=payload.rationale.strip(),
        steps=tuple(steps),
        expected_insights=tuple(
            line.strip() for line in payload.expectedInsights if line.strip()
        ),
    )


class PlanGenerator:
    """Turns a research question into a 3-6 step investigation plan."""

    name = "planner"

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
            timeout=settings.plan_timeout_s,
        )
        self.run_id = run_id

    @staticmethod
    def build_prompt(query: str, locale: Locale) -> str:
        instruction = render_localized(
            "planner.instruction", locale, today=date.today().isoformat()
        )
        return f"{instruction}\n\n{render_prompt('planner.question', query=query)}"

    async def _attempt(
        self, query: str, prompt: str, cancellation: CancellationToken | None
    ) -> ResearchPlan:
        response = await self.client.generate(
            prompt,
            GenerationConfig(
                temperature=0.3,
                max_output_tokens=1024,
                response_schema=PLAN_SCHEMA,
                system_instruction=render_prompt("planner.system_prompt"),
                cancellation=cancellation,
                caller=self.name,
            ),
        )
        if not response.text.strip():
            raise PlanningError("Plan generation returned an empty response.")
        payload = parse_structured(response.text, PlanPayload, "plan")
        return build_plan(query, payload)

    async def generate(
        self,
        query: str,
        *,
        locale: Locale = "en",
        cancellation: CancellationToken | None = None,
    ) -> ResearchPlan:
        prompt = self.build_prompt(query, locale)
        try:
            plan = await run_with_retry(
                lambda: self._attempt(query, prompt, cancellation),
                policy=self.policy,
                label="Plan generation",
                cancellation=cancellation,
            )
        except RetryExhausted as exc:
            log_service.log_research_step(
                self.run_id, "plan", "failed", {"error": str(exc.last_error)}
            )
            raise PlanningError(
                f"Plan generation failed after {exc.attempts} attempts: {exc.last_error}"
            ) from exc.last_error

        log_service.log_research_step(
            self.run_id,
            "plan",
            "completed",
            {"steps": [step.id for step in plan.steps]},
        )
        return plan
