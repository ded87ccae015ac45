"""Conversation turns — the chat entry point, plain JSON or server-sent events."""

import json
import logging
import uuid
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from chatgate.core.dependencies import Caller, get_caller, get_gateway
from chatgate.gateway.errors import GatewayError
from chatgate.gateway.gateway import ChatGateway, TurnStream
from chatgate.gateway.types import StreamEventType, TurnRequest
from chatgate.schemas.turn import TurnCreate, TurnResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/turns", tags=["turns"])


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _event_stream(stream: TurnStream) -> AsyncIterator[str]:
    """Forward gateway events as SSE until done, error or disconnect."""
    try:
        async for event in stream:
            if event.type == StreamEventType.CHUNK:
                yield _sse("chunk", {"text": event.text})
            elif event.type == StreamEventType.DONE:
                yield _sse("done", event.response.to_dict())
            else:
                error = event.error
                if isinstance(error, GatewayError):
                    payload = error.to_dict()
                else:
                    payload = {"code": "internal_error", "message": "Internal error", "retryable": False}
                yield _sse("error", payload)
    finally:
        # Stops forwarding only; the turn finishes in the background
        await stream.aclose()


@router.post("")
async def create_turn(
    body: TurnCreate,
    caller: Caller = Depends(get_caller),
    gateway: ChatGateway = Depends(get_gateway),
):
    request = TurnRequest(
        user_id=caller.user_id,
        session_id=body.session_id,
        model=body.model,
        user_text=body.message,
        tier=caller.tier or gateway.config.default_tier,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        request_id=uuid.uuid4().hex,
    )

    if not body.stream:
        response = await gateway.turn(request)
        return TurnResponse(**response.to_dict())

    stream = await gateway.open_stream(request)
    headers = {
        **stream.rate_limit.headers(),
        "Cache-Control": "no-cache",
        "X-Request-Id": request.request_id,
    }
    return StreamingResponse(_event_stream(stream), media_type="text/event-stream", headers=headers)
