from __future__ import annotations

import os
from urllib.parse import urlunparse
from xml.sax.saxutils import quoteattr

from fastapi import APIRouter, Request
from fastapi.responses import Response

router = APIRouter()


def _media_stream_url(request: Request) -> str:
    override = os.getenv("TWILIO_MEDIA_STREAM_BASE")
    if override:
        base = override.rstrip("/")
        return f"{base}/twilio/media-stream"
    host = request.url.hostname or "localhost"
    port = request.url.port
    netloc = f"{host}:{port}" if port else host
    return urlunparse(("wss", netloc, "/twilio/media-stream", "", "", ""))


@router.post("/voice")
async def twilio_voice(request: Request) -> Response:
    form = await request.form()
    caller = form.get("From")
    parameter = f"\n            <Parameter name=\"from\" value={quoteattr(str(caller))}/>" if caller else ""
    twiml = f"""<?xml version=\"1.0\" encoding=\"UTF-8\"?>
<Response>
    <Connect>
        <Stream url=\"{_media_stream_url(request)}\">{parameter}
        </Stream>
    </Connect>
</Response>"""
    return Response(content=twiml, media_type="application/xml")
