from __future__ import annotations

import asyncio

from fastapi import Request

from whoisp.config import settings
from whoisp.services.cancellation import CancellationToken


async def watch_disconnect(
    request: Request,
    token: CancellationToken,
    *,
    interval: float | None = None,
) -> None:
    """Fire `token` once the client goes away. Runs until cancelled or fired."""
    poll = settings.disconnect_poll_interval_s if interval is None else interval
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(poll)
