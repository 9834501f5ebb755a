from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from whoisp.api.deps import OrchestratorFactory, get_orchestrator_factory
from whoisp.api.disconnect import watch_disconnect
from whoisp.models.events import StreamEvent
from whoisp.models.schemas import ErrorResponse, ResearchRequest
from whoisp.services import logger as log_service
from whoisp.services import streaming
from whoisp.services.cancellation import CancellationToken

router = APIRouter(prefix="/api", tags=["research"])

NDJSON_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
}

# Pipelines outlive their response; hold references until they finish.
_background_tasks: set[asyncio.Task] = set()


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(ErrorResponse(error=message).model_dump(), status_code=status_code)


@router.post("/deep-research")
async def deep_research(
    request: Request,
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Run a deep research pipeline and stream its events as NDJSON."""
    try:
        body = await request.json()
    except ValueError:
        return _error("Invalid JSON body", 400)
    try:
        payload = ResearchRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError:
        return _error("Query is required", 400)

    token = CancellationToken()
    queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

    async def pump() -> None:
        queue.put_nowait(streaming.status("started"))
        try:
            orchestrator = orchestrator_factory()
            async for event in orchestrator.run(
                payload.query, locale=payload.locale, cancellation=token
            ):
                queue.put_nowait(event)
            queue.put_nowait(streaming.done())
        except Exception as e:
            log_service.log_event(
                event_type="research_failed",
                message="Deep research run failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            queue.put_nowait(streaming.error(str(e) or "Unexpected error"))
        finally:
            queue.put_nowait(None)

    async def event_stream():
        task = asyncio.create_task(pump())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        watcher = asyncio.create_task(watch_disconnect(request, token))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event.format()
        finally:
            watcher.cancel()
            if not task.done():
                # The pipeline keeps running so it can finish its partial report.
                token.cancel("stream closed")

    return StreamingResponse(
        event_stream(),
        media_type="application/x-ndjson",
        headers=NDJSON_HEADERS,
    )
