import asyncio
import json
import time
from typing import AsyncIterator, Optional

from .debug import debug_print

SSE_DONE = "data: [DONE]\n\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_sse(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def build_chat_completion_chunk(
    request_id: str,
    model: str,
    content: str,
    finish_reason: Optional[str] = None,
) -> dict:
    return {
        "id": request_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": content},
                "finish_reason": finish_reason,
            }
        ],
    }


async def stream_text_as_chunks(
    text: str,
    *,
    request_id: str,
    model: str,
    delay_seconds: float = 0.02,
) -> AsyncIterator[str]:
    """Replay an already complete reply one character at a time.

    The upstream only returns whole messages, so the typing effect is purely
    cosmetic. If the client goes away the response task cancels this generator
    at the next sleep.
    """
    sent = 0
    try:
        for char in text:
            yield format_sse(build_chat_completion_chunk(request_id, model, char))
            sent += 1
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
    except asyncio.CancelledError:
        debug_print(f"🔌 Client disconnected from {request_id} after {sent}/{len(text)} characters")
        raise

    yield format_sse(build_chat_completion_chunk(request_id, model, "", "stop"))
    yield SSE_DONE


async def stream_error_as_chunks(message: str, *, request_id: str, model: str) -> AsyncIterator[str]:
    """Report a failure inside an already open stream and close it cleanly."""
    yield format_sse(build_chat_completion_chunk(request_id, model, message))
    yield format_sse(build_chat_completion_chunk(request_id, model, "", "stop"))
    yield SSE_DONE
