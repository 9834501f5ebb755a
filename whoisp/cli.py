"""WhoisP - Deep Research CLI

Runs the pipeline in-process and prints events as they arrive. Ctrl-C stops
the research and still prints the partial report.
"""

import argparse
import asyncio
import signal
import sys

from whoisp.agents.orchestrator import ResearchOrchestrator
from whoisp.errors import DeepResearchError
from whoisp.llm_client import build_model_client
from whoisp.models.schemas import normalize_locale
from whoisp.services.cancellation import CancellationToken


def print_event(event_type: str, data: dict) -> None:
    if event_type == "images":
        print(f"[*] Found {len(data.get('images', []))} subject images")

    elif event_type == "plan":
        plan = data.get("plan", {})
        steps = plan.get("steps", [])
        print(f"\n[*] Research Plan ({len(steps)} steps): {plan.get('primaryGoal', '')}")
        for step in steps:
            print(f"  {step.get('id')}. {step.get('title', '')}")
            print(f"     Query: {step.get('query', '')[:80]}")

    elif event_type == "search":
        step = data.get("step", {})
        findings = step.get("findings", [])
        print(f"  [+] {step.get('stepId')} complete: {len(findings)} findings")
        if not findings:
            print(f"      {step.get('summary', '')}")

    elif event_type == "final":
        sources = data.get("sources", [])
        print(f"\n{'='*50}")
        print("REPORT:")
        print(f"{'='*50}")
        print(data.get("report", ""))
        if sources:
            print("\nSources:")
            for source in sources:
                print(f"  [{source.get('id')}] {source.get('title')} ({source.get('url')})")


async def run_research(query: str, locale: str = "en") -> int:
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except NotImplementedError:
        pass  # Windows event loops have no signal handlers

    try:
        orchestrator = ResearchOrchestrator(build_model_client())
        async for event in orchestrator.run(
            query, locale=normalize_locale(locale), cancellation=token
        ):
            print_event(event.event.value, event.data)
    except (DeepResearchError, ValueError) as e:
        print(f"\n[!] Error: {e}", file=sys.stderr)
        return 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
    return 0


def main():
    parser = argparse.ArgumentParser(description="WhoisP Deep Research")
    parser.add_argument("--query", "-q", required=True, help="Person or research question")
    parser.add_argument("--locale", "-l", choices=["en", "ja"], default="en")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_research(args.query, args.locale)))


if __name__ == "__main__":
    main()
