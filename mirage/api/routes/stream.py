"""MJPEG stream of the composed output."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from mirage.api.services.engine import VideoEngine
from mirage.api.services.state import get_engine

router = APIRouter()


@router.get("/stream/video")
async def stream_video() -> StreamingResponse:
    async def generator():
        engine: VideoEngine = await asyncio.to_thread(get_engine)
        async for chunk in engine.mjpeg_generator():
            yield chunk

    return StreamingResponse(
        generator(),
        media_type="multipart/x-mixed-replace; boundary=frame",
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
            "Pragma": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
