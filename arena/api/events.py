"""Server-sent event stream of router activity."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from arena.core.event_bus import ArenaEventBus
from arena.runtime import get_event_bus

router = APIRouter(tags=["events"])

HEARTBEAT_SECONDS = 15.0


async def _event_stream(
    request: Request, bus: ArenaEventBus, replay: bool
) -> AsyncIterator[str]:
    # Send an initial event so the browser fires onopen reliably
    yield "event: connected\ndata: {}\n\n"
    async with bus.subscribe() as queue:
        if replay:
            for event in bus.history():
                yield event.to_sse()
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                # Heartbeat to keep connection alive
                yield ": heartbeat\n\n"
                continue
            yield event.to_sse()


@router.get("/events")
async def stream_events(
    request: Request,
    replay: bool = Query(False, description="Send buffered history before live events"),
    bus: ArenaEventBus = Depends(get_event_bus),
) -> StreamingResponse:
    return StreamingResponse(
        _event_stream(request, bus, replay),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
