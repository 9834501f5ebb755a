from __future__ import annotations

import asyncio
from typing import Sequence

from whoisp.config import settings
from whoisp.errors import SynthesisError
from whoisp.llm_client import GenerationConfig, ModelClient
from whoisp.models.research import ResearchPlan, SourceReference, StepResult
from whoisp.models.schemas import Locale
from whoisp.services import logger as log_service
from whoisp.services.cancellation import CancellationToken
from whoisp.services.prompt_store import render_localized, render_prompt
from whoisp.services.retry import RetryExhausted, RetryPolicy, run_with_retry


# --- Deterministic reports ---


def _step_sections(steps: Sequence[StepResult]) -> str:
    sections = []
    for step in steps:
        bullets = "\n".join(f"- **{f.heading}**: {f.insight}" for f in step.findings)
        sections.append(f"### {step.title}\n\n{step.summary}\n\n{bullets}")
    return "\n\n".join(sections)


def fallback_report(query: str, steps: Sequence[StepResult], locale: Locale) -> str:
    """Markdown built from completed steps alone. Never raises."""
    if locale == "ja":
        heading = "## 調査結果（部分的）"
        lead = "調査は途中で中止されましたが、以下の情報を収集しました。"
    else:
        heading = "## Research Results (Partial)"
        lead = "The research was stopped, but the following information was collected."
    return f"# {query}\n\n{heading}\n\n{lead}\n\n{_step_sections(steps)}"


def plan_only_report(query: str, plan: ResearchPlan, locale: Locale) -> str:
    """Markdown describing the plan for runs stopped before any evidence arrived."""
    steps = "\n".join(f"- **{step.title}**: {step.query}" for step in plan.steps)
    if locale == "ja":
        return (
            f"# {query}\n\n## 調査計画\n\n{plan.primary_goal}\n\n{plan.rationale}\n\n"
            f"### 計画されたステップ\n\n{steps}\n\n*調査は開始前に中止されました。*"
        )
    return (
        f"# {query}\n\n## Research Plan\n\n{plan.primary_goal}\n\n{plan.rationale}\n\n"
        f"### Planned Steps\n\n{steps}\n\n*Research was stopped before gathering evidence.*"
    )


# --- Model synthesis ---


class ReportSynthesizer:
    """Writes the final cited report from the plan, step results and sources."""

    name = "synthesizer"

    def __init__(
        self,
        client: ModelClient,
        *,
        policy: RetryPolicy | None = None,
        partial_timeout: float | None = None,
        run_id: str = "",
    ):
        self.client = client
        self.policy = policy or RetryPolicy(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_s,
            timeout=settings.synthesis_timeout_s,
        )
        self.partial_timeout = (
            settings.partial_report_timeout_s if partial_timeout is None else partial_timeout
        )
        self.run_id = run_id

    @staticmethod
    def build_prompt(
        query: str,
        plan: ResearchPlan,
        steps: Sequence[StepResult],
        sources: Sequence[SourceReference],
        locale: Locale,
        *,
        partial: bool = False,
    ) -> str:
        plan_outline = "\n".join(
            f"- {step.id}: {step.title} - focus: {step.angle}" for step in plan.steps
        )

        blocks = []
        for step in steps:
            lines = [f"Step {step.step_id} - {step.title}:"]
            for finding in step.findings:
                citations = " ".join(f"[{source.id}]" for source in finding.sources)
                lines.append(f"  - {finding.heading}: {finding.insight} {citations}".rstrip())
            blocks.append("\n".join(lines))
        findings_outline = "\n\n".join(blocks)

        catalog = "\n".join(
            f"[{source.id}] {source.title}"
            + (f" - {source.domain}" if source.domain else "")
            + f" ({source.url})"
            for source in sources
        )

        instruction = render_localized("synthesis.instruction", locale)
        if partial:
            instruction = f"{render_prompt('synthesis.partial_note')}\n{instruction}"
        context = render_prompt(
            "synthesis.context",
            query=query,
            primary_goal=plan.primary_goal,
            rationale=plan.rationale,
            expected_insights="; ".join(plan.expected_insights),
            plan_outline=plan_outline,
            findings_outline=findings_outline,
            sources_catalog=catalog,
        )
        return f"{instruction}\n\n{context}"

    async def _generate(self, prompt: str, cancellation: CancellationToken | None) -> str:
        response = await self.client.generate(
            prompt,
            GenerationConfig(
                temperature=0.4,
                top_p=0.9,
                max_output_tokens=2048,
                system_instruction=render_prompt("synthesis.system_prompt"),
                cancellation=cancellation,
                caller=self.name,
            ),
        )
        return response.text

    async def synthesize(
        self,
        query: str,
        plan: ResearchPlan,
        steps: Sequence[StepResult],
        sources: Sequence[SourceReference],
        *,
        locale: Locale = "en",
        cancellation: CancellationToken | None = None,
        partial: bool = False,
    ) -> str:
        """Synthesize the report.

        Full mode threads `cancellation` and raises `SynthesisError` once retries
        are spent. Partial mode ignores the token, bounds the whole retrying call
        by `partial_timeout` and falls back to `fallback_report` on any failure.
        """
        prompt = self.build_prompt(query, plan, steps, sources, locale, partial=partial)

        if partial:
            try:
                report = await asyncio.wait_for(
                    run_with_retry(
                        lambda: self._generate(prompt, None),
                        policy=self.policy,
                        label="Partial report synthesis",
                    ),
                    timeout=self.partial_timeout,
                )
            except Exception as exc:
                log_service.log_research_step(
                    self.run_id, "synthesis", "fallback", {"error": str(exc) or "timeout"}
                )
                return fallback_report(query, steps, locale)
            log_service.log_research_step(self.run_id, "synthesis", "partial", None)
            return report

        try:
            report = await run_with_retry(
                lambda: self._generate(prompt, cancellation),
                policy=self.policy,
                label="Report synthesis",
                cancellation=cancellation,
            )
        except RetryExhausted as exc:
            log_service.log_research_step(
                self.run_id, "synthesis", "failed", {"error": str(exc.last_error)}
            )
            raise SynthesisError(
                f"Report synthesis failed after {exc.attempts} attempts: {exc.last_error}"
            ) from exc.last_error

        log_service.log_research_step(self.run_id, "synthesis", "completed", None)
        return report
