from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from whoisp.api.disconnect import watch_disconnect
from whoisp.errors import ImageLookupError, ResearchCancelledError
from whoisp.models.schemas import ErrorResponse, PersonImagesRequest
from whoisp.services.cancellation import CancellationToken
from whoisp.tools.wikimedia_images import fetch_person_images

router = APIRouter(prefix="/api", tags=["images"])


def _status_for(error: ImageLookupError) -> int:
    if error.status_code == 429:
        return 429
    if error.status_code is not None and 400 <= error.status_code < 500:
        return 422
    return 502


@router.post("/person-images")
async def person_images(request: Request):
    """Wikimedia Commons portraits for a person's name."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(ErrorResponse(error="Invalid JSON body").model_dump(), status_code=400)

    body = body if isinstance(body, dict) else {}
    query = body.get("query")
    payload = PersonImagesRequest(
        query=query if isinstance(query, str) else "",
        locale=body.get("locale"),
    )
    if not payload.query.strip():
        return JSONResponse(ErrorResponse(error="Query is required").model_dump(), status_code=422)

    token = CancellationToken()
    watcher = asyncio.create_task(watch_disconnect(request, token))
    try:
        found = await fetch_person_images(payload.query, payload.locale, cancellation=token)
    except ResearchCancelledError:
        # Client closed request
        return Response(status_code=499)
    except ImageLookupError as e:
        return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=_status_for(e))
    finally:
        watcher.cancel()

    return {"images": [image.to_wire() for image in found]}
