from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from conftest import ScriptedModelClient, evidence_response, plan_json, step_id_of
from whoisp.agents.orchestrator import ResearchOrchestrator, RunPhase
from whoisp.agents.synthesizer import plan_only_report
from whoisp.errors import PlanningError, ResearchCancelledError
from whoisp.models.research import DeepResearchImage, ResearchPlan
from whoisp.services.cancellation import CancellationToken


async def no_images(query, locale, cancellation):
    return []


def make_orchestrator(client, fast_policy, image_lookup=no_images, **kwargs):
    return ResearchOrchestrator(
        client,
        image_lookup=image_lookup,
        plan_policy=fast_policy,
        evidence_policy=fast_policy,
        synthesis_policy=fast_policy,
        **kwargs,
    )


async def collect(orchestrator, query="Ada Lovelace", **kwargs):
    return [event async for event in orchestrator.run(query, **kwargs)]


def event_types(events):
    return [event.event.value for event in events]


async def hang_forever(prompt, config):
    await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_happy_path_event_order_and_sources(fast_policy):
    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(4),
            "evidence": lambda prompt, config: evidence_response(
                step_id_of(config), ["https://shared.org/bio", f"https://x.org/{step_id_of(config)}"]
            ),
            "synthesizer": lambda prompt, config: "## Overview\nAda [1]",
        }
    )
    orchestrator = make_orchestrator(client, fast_policy)

    events = await collect(orchestrator)

    assert event_types(events) == ["images", "plan"] + ["search"] * 4 + ["final"]
    plan = events[1].data["plan"]
    assert 3 <= len(plan["steps"]) <= 6
    final = events[-1].to_dict()
    assert final["report"] == "## Overview\nAda [1]"
    ids = [s["id"] for s in final["sources"]]
    assert ids == [str(i) for i in range(1, len(ids) + 1)]
    # One shared URL plus one per step.
    assert len(ids) == 5
    assert orchestrator.phase is RunPhase.DONE


@pytest.mark.asyncio
async def test_search_events_reference_only_registered_sources(fast_policy):
    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": lambda prompt, config: evidence_response(step_id_of(config)),
            "synthesizer": lambda prompt, config: "report",
        }
    )

    events = await collect(make_orchestrator(client, fast_policy))

    final_ids = {s["id"] for s in events[-1].data["sources"]}
    for event in events:
        if event.event.value != "search":
            continue
        step = event.data["step"]
        union = {s["id"] for f in step["findings"] for s in f["sources"]}
        assert {s["id"] for s in step["sources"]} == union
        assert union <= final_ids


@pytest.mark.asyncio
async def test_plan_failure_emits_no_plan_search_or_final(fast_policy):
    client = ScriptedModelClient({"planner": lambda prompt, config: RuntimeError("quota exceeded")})
    orchestrator = make_orchestrator(client, fast_policy)
    seen = []

    with pytest.raises(PlanningError):
        async for event in orchestrator.run("Ada Lovelace"):
            seen.append(event.event.value)

    assert seen == ["images"]
    assert orchestrator.phase is RunPhase.FAILED


@pytest.mark.asyncio
async def test_exhausted_step_still_reaches_final(fast_policy):
    def evidence(prompt, config):
        if step_id_of(config) == "S2":
            return RuntimeError("search backend down")
        return evidence_response(step_id_of(config))

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": evidence,
            "synthesizer": lambda prompt, config: "report",
        }
    )

    events = await collect(make_orchestrator(client, fast_policy))

    assert event_types(events)[-1] == "final"
    steps = {e.data["step"]["stepId"]: e.data["step"] for e in events if e.event.value == "search"}
    assert steps["S2"]["findings"] == []
    assert steps["S2"]["summary"].startswith("Evidence collection failed after 3 attempts")
    assert len(steps["S1"]["findings"]) == 1


@pytest.mark.asyncio
async def test_completion_log_counts_degraded_steps(fast_policy):
    def evidence(prompt, config):
        if step_id_of(config) == "S3":
            return RuntimeError("search backend down")
        return evidence_response(step_id_of(config))

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": evidence,
            "synthesizer": lambda prompt, config: "report",
        }
    )

    with patch("whoisp.agents.orchestrator.log_service.log_event") as log_event:
        await collect(make_orchestrator(client, fast_policy))

    (completed,) = [
        c for c in log_event.call_args_list if c.kwargs.get("event_type") == "research_completed"
    ]
    assert completed.kwargs["steps"] == 3
    assert completed.kwargs["degraded_steps"] == 1
    assert completed.kwargs["phase"] == "done"


@pytest.mark.asyncio
async def test_cancel_after_plan_yields_plan_only_report(fast_policy):
    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": hang_forever,
            "synthesizer": lambda prompt, config: "should not be called",
        }
    )
    orchestrator = make_orchestrator(client, fast_policy)
    token = CancellationToken()
    events = []

    async for event in orchestrator.run("Ada Lovelace", cancellation=token):
        events.append(event)
        if event.event.value == "plan":
            token.cancel()

    assert event_types(events) == ["images", "plan", "final"]
    final = events[-1].data
    plan = ResearchPlan.model_validate(events[1].data["plan"])
    assert final["report"] == plan_only_report("Ada Lovelace", plan, "en")
    assert final["sources"] == []
    assert client.calls_for("synthesizer") == []
    assert orchestrator.phase is RunPhase.CANCELLED


@pytest.mark.asyncio
async def test_cancel_with_two_of_four_steps_done_reports_only_those(fast_policy):
    def evidence(prompt, config):
        if step_id_of(config) in ("S1", "S2"):
            return evidence_response(step_id_of(config))
        return hang_forever(prompt, config)

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(4),
            "evidence": evidence,
            "synthesizer": lambda prompt, config: "partial synthesis",
        }
    )
    token = CancellationToken()
    events = []

    async for event in make_orchestrator(client, fast_policy).run("Ada Lovelace", cancellation=token):
        events.append(event)
        if event_types(events).count("search") == 2:
            token.cancel()

    assert event_types(events) == ["images", "plan", "search", "search", "final"]
    assert events[-1].data["report"] == "partial synthesis"

    [(prompt, config)] = client.calls_for("synthesizer")
    assert config.cancellation is None
    assert "Step S1 - " in prompt and "Step S2 - " in prompt
    assert "Step S3 - " not in prompt and "Step S4 - " not in prompt
    assert {s["url"] for s in events[-1].data["sources"]} == {
        "https://example.com/s1",
        "https://example.com/s2",
    }


@pytest.mark.asyncio
async def test_cancel_during_synthesis_recovers_with_partial_report(fast_policy):
    async def synthesize(prompt, config):
        if config.cancellation is not None:
            config.cancellation.cancel()
            await asyncio.sleep(10)
        return "recovered"

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": lambda prompt, config: evidence_response(step_id_of(config)),
            "synthesizer": synthesize,
        }
    )
    orchestrator = make_orchestrator(client, fast_policy)

    events = await collect(orchestrator)

    assert events[-1].data["report"] == "recovered"
    assert len(client.calls_for("synthesizer")) == 2
    assert orchestrator.phase is RunPhase.CANCELLED


@pytest.mark.asyncio
async def test_cancel_before_plan_raises(fast_policy):
    token = CancellationToken()
    token.cancel()
    client = ScriptedModelClient({"planner": lambda prompt, config: plan_json()})

    with pytest.raises(ResearchCancelledError):
        await collect(make_orchestrator(client, fast_policy), cancellation=token)


@pytest.mark.asyncio
async def test_image_lookup_failure_yields_empty_images(fast_policy):
    async def broken_lookup(query, locale, cancellation):
        raise RuntimeError("cse down")

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": lambda prompt, config: evidence_response(step_id_of(config)),
            "synthesizer": lambda prompt, config: "report",
        }
    )

    events = await collect(make_orchestrator(client, fast_policy, image_lookup=broken_lookup))

    assert events[0].to_dict() == {"type": "images", "images": []}
    assert event_types(events)[-1] == "final"


@pytest.mark.asyncio
async def test_images_are_emitted_first(fast_policy):
    async def lookup(query, locale, cancellation):
        return [DeepResearchImage(url="https://img.example/ada.jpg", title="Ada")]

    client = ScriptedModelClient(
        {
            "planner": lambda prompt, config: plan_json(3),
            "evidence": lambda prompt, config: evidence_response(step_id_of(config)),
            "synthesizer": lambda prompt, config: "report",
        }
    )

    events = await collect(make_orchestrator(client, fast_policy, image_lookup=lookup))

    assert events[0].data["images"] == [{"url": "https://img.example/ada.jpg", "title": "Ada"}]


@pytest.mark.asyncio
async def test_blank_query_is_rejected(fast_policy):
    client = ScriptedModelClient({})

    with pytest.raises(ValueError):
        await collect(make_orchestrator(client, fast_policy), query="   ")

