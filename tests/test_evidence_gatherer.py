from __future__ import annotations

import asyncio
import json

import pytest

from conftest import ScriptedModelClient, evidence_response, step_id_of
from whoisp.agents.evidence_gatherer import EvidenceGatherer, extract_citations
from whoisp.errors import ResearchCancelledError
from whoisp.llm_client import GroundingChunk, ModelResponse
from whoisp.models.research import PlanStep
from whoisp.research_core.source_registry import SourceRegistry
from whoisp.services.cancellation import CancellationToken


def _step(step_id: str = "S1") -> PlanStep:
    return PlanStep(
        id=step_id,
        title=f"Title {step_id}",
        query=f"query {step_id}",
        angle="angle",
        deliverable="deliverable",
    )


def test_extract_citations_dedups_by_lowercased_url_keeping_first_index():
    chunks = [
        GroundingChunk(index=0, url="https://A.com/x", title="first"),
        GroundingChunk(index=1, url="https://b.com/y", title="b"),
        GroundingChunk(index=2, url="https://a.com/x", title="dupe"),
    ]
    citations = extract_citations(chunks)

    assert [(c.index, c.title) for c in citations] == [(0, "first"), (1, "b")]


@pytest.mark.asyncio
async def test_gather_resolves_source_ids_against_grounding(fast_policy):
    response = ModelResponse(
        text=json.dumps(
            {
                "summary": " Summary ",
                "findings": [
                    {"heading": "H1", "insight": "I1", "evidence": "E1", "sourceIds": [2, 2, 9]},
                    {"heading": "H2", "insight": "I2", "evidence": "E2", "confidence": " high "},
                ],
            }
        ),
        grounding=[
            GroundingChunk(index=0, url="https://a.com/1", title="A"),
            GroundingChunk(index=1, url="https://b.com/2", title="B"),
            GroundingChunk(index=2, url="https://c.com/3", title="C"),
        ],
        search_queries=["who was ada"],
    )
    client = ScriptedModelClient({"evidence": lambda prompt, config: response})
    registry = SourceRegistry()

    result = await EvidenceGatherer(client, policy=fast_policy).gather(
        "Ada Lovelace", _step(), register=registry.register
    )

    assert result.summary == "Summary"
    assert result.queries == ("who was ada",)
    first, second = result.findings
    assert [s.url for s in first.sources] == ["https://b.com/2"]
    assert second.sources == ()
    assert second.confidence == "high"
    # Step sources are the union of finding sources only.
    assert [s.url for s in result.sources] == ["https://b.com/2"]
    # Every grounded citation is still registered run-wide.
    assert len(registry) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("source_ids", [[1, None], [1, "n/a"], [1, {"id": 2}]])
async def test_non_numeric_source_ids_are_dropped(fast_policy, source_ids):
    response = ModelResponse(
        text=json.dumps(
            {
                "summary": "S",
                "findings": [{"heading": "H", "insight": "I", "evidence": "E", "sourceIds": source_ids}],
            }
        ),
        grounding=[GroundingChunk(index=0, url="https://a.com/1", title="A")],
    )
    client = ScriptedModelClient({"evidence": lambda prompt, config: response})

    result = await EvidenceGatherer(client, policy=fast_policy).gather(
        "q", _step(), register=SourceRegistry().register
    )

    (finding,) = result.findings
    assert [s.id for s in finding.sources] == ["1"]
    assert len(client.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("source_ids", [1, "1", None])
async def test_scalar_source_ids_cite_nothing(fast_policy, source_ids):
    response = ModelResponse(
        text=json.dumps(
            {
                "summary": "S",
                "findings": [{"heading": "H", "insight": "I", "evidence": "E", "sourceIds": source_ids}],
            }
        ),
        grounding=[GroundingChunk(index=0, url="https://a.com/1", title="A")],
    )
    client = ScriptedModelClient({"evidence": lambda prompt, config: response})

    result = await EvidenceGatherer(client, policy=fast_policy).gather(
        "q", _step(), register=SourceRegistry().register
    )

    (finding,) = result.findings
    assert finding.sources == ()
    assert result.summary == "S"


@pytest.mark.asyncio
async def test_gather_uses_grounded_call_parameters(fast_policy):
    client = ScriptedModelClient(
        {"evidence": lambda prompt, config: evidence_response(step_id_of(config))}
    )

    await EvidenceGatherer(client, policy=fast_policy).gather(
        "Ada Lovelace", _step("S7"), register=SourceRegistry().register
    )

    prompt, config = client.calls[0]
    assert "step S7" in prompt
    assert '"query S7"' in prompt
    assert config.web_search is True
    assert config.response_schema is None
    assert (config.temperature, config.top_p, config.max_output_tokens) == (0.35, 0.9, 2048)
    assert "sourceIds" in config.system_instruction


@pytest.mark.asyncio
async def test_failed_attempts_register_nothing_and_degrade(fast_policy):
    bad = ModelResponse(
        text="I could not find anything useful.",
        grounding=[GroundingChunk(index=0, url="https://a.com", title="A")],
    )
    client = ScriptedModelClient({"evidence": lambda prompt, config: bad})
    registry = SourceRegistry()

    result = await EvidenceGatherer(client, policy=fast_policy).gather(
        "q", _step("S2"), register=registry.register
    )

    assert result.step_id == "S2"
    assert result.findings == ()
    assert result.sources == ()
    assert result.queries == ()
    assert result.summary.startswith("Evidence collection failed after 3 attempts:")
    assert result.degraded
    assert len(registry) == 0
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_cancellation_propagates_instead_of_degrading(fast_policy):
    token = CancellationToken()

    async def cancel_then_fail(prompt, config):
        token.cancel()
        return RuntimeError("provider hiccup")

    client = ScriptedModelClient({"evidence": cancel_then_fail})

    with pytest.raises(ResearchCancelledError):
        await EvidenceGatherer(client, policy=fast_policy).gather(
            "q", _step(), register=SourceRegistry().register, cancellation=token
        )


@pytest.mark.asyncio
async def test_gather_all_yields_in_completion_order(fast_policy):
    delays = {"S1": 0.05, "S2": 0.0, "S3": 0.02}

    async def reply(prompt, config):
        step_id = step_id_of(config)
        await asyncio.sleep(delays[step_id])
        return evidence_response(step_id)

    client = ScriptedModelClient({"evidence": reply})
    gatherer = EvidenceGatherer(client, policy=fast_policy)

    outcomes = [
        outcome
        async for outcome in gatherer.gather_all(
            "q", [_step(s) for s in ("S1", "S2", "S3")], register=SourceRegistry().register
        )
    ]

    assert [o.step.id for o in outcomes] == ["S2", "S3", "S1"]
    assert all(o.result is not None and not o.cancelled for o in outcomes)


@pytest.mark.asyncio
async def test_gather_all_reports_cancelled_steps(fast_policy):
    token = CancellationToken()
    release = asyncio.Event()

    async def reply(prompt, config):
        step_id = step_id_of(config)
        if step_id == "S1":
            return evidence_response(step_id)
        await release.wait()
        return evidence_response(step_id)

    client = ScriptedModelClient({"evidence": reply})
    gatherer = EvidenceGatherer(client, policy=fast_policy)

    outcomes = []
    async for outcome in gatherer.gather_all(
        "q",
        [_step("S1"), _step("S2")],
        register=SourceRegistry().register,
        cancellation=token,
    ):
        outcomes.append(outcome)
        token.cancel()

    by_id = {o.step.id: o for o in outcomes}
    assert by_id["S1"].result is not None
    assert by_id["S2"].cancelled is True
    assert by_id["S2"].result is None
