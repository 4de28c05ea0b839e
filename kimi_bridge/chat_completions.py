from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional

from fastapi import HTTPException
from starlette.responses import JSONResponse, StreamingResponse

from .debug import debug_print
from .errors import InvalidRequestError, NonceError, UnsupportedModelError, UpstreamError
from .nonce import NonceProvider
from .prompt import build_contextual_prompt
from .sessions import SessionStore, new_conversation_id
from .streaming import STREAM_HEADERS, stream_error_as_chunks, stream_text_as_chunks
from .upstream import DEFAULT_MODEL_MAP, KimiUpstreamClient, prepare_payload, resolve_upstream_model

# First try plus one retry with a freshly scraped nonce.
MAX_UPSTREAM_ATTEMPTS = 2
RETRY_FAILED_MESSAGE = "Upstream request still failed after retry"
INVALID_MESSAGES_MESSAGE = "'messages' list cannot be empty, and the last message must be from user role."


@dataclass
class CompletionRequest:
    request_id: str
    model: str
    content: str
    user: Optional[str] = None
    message_count: int = 1

    @property
    def stateful(self) -> bool:
        return self.user is not None


def extract_text_content(content: object) -> str:
    """Accept plain strings or OpenAI content-part lists; only text parts are kept."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text_parts.append(str(part.get("text", "")))
            elif isinstance(part, str):
                text_parts.append(part)
        return "\n".join(text_parts)
    if content is None:
        return ""
    raise InvalidRequestError("Message 'content' must be a string or a list of content parts.")


class ChatCompletionService:
    """Runs one chat turn against the upstream and replays the reply as a stream.

    The nonce provider and session store are passed in rather than read from
    module state, so tests can hand in their own.
    """

    def __init__(
        self,
        *,
        nonce_provider: NonceProvider,
        session_store: SessionStore,
        upstream: KimiUpstreamClient,
        model_map: Optional[Mapping[str, str]] = None,
        default_model: Optional[str] = None,
        typing_delay_seconds: float = 0.02,
    ) -> None:
        self.nonce_provider = nonce_provider
        self.sessions = session_store
        self.upstream = upstream
        self.model_map = dict(model_map) if model_map is not None else dict(DEFAULT_MODEL_MAP)
        self.default_model = default_model or next(iter(self.model_map), "")
        self.typing_delay_seconds = typing_delay_seconds

    def prepare(self, body: object) -> CompletionRequest:
        """Validate a request body. Nothing here touches the network."""
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object.")

        messages = body.get("messages")
        if (
            not isinstance(messages, list)
            or not messages
            or not isinstance(messages[-1], dict)
            or messages[-1].get("role") != "user"
        ):
            raise InvalidRequestError(INVALID_MESSAGES_MESSAGE)

        model = body.get("model") or self.default_model
        resolve_upstream_model(model, self.model_map)

        # An empty 'user' is treated like an absent one: the request runs stateless.
        user = body.get("user")
        if user is not None and not isinstance(user, str):
            raise InvalidRequestError("'user' must be a string.")

        return CompletionRequest(
            request_id=f"chatcmpl-{uuid.uuid4()}",
            model=model,
            content=extract_text_content(messages[-1].get("content")),
            user=user or None,
            message_count=len(messages),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        try:
            reply = await self.complete_turn(request)
        except UpstreamError as e:
            debug_print(f"❌ {request.request_id} failed after retry: {e.message}")
            async for record in stream_error_as_chunks(
                f"{RETRY_FAILED_MESSAGE}: {e.message}",
                request_id=request.request_id,
                model=request.model,
            ):
                yield record
            return

        async for record in stream_text_as_chunks(
            reply,
            request_id=request.request_id,
            model=request.model,
            delay_seconds=self.typing_delay_seconds,
        ):
            yield record

    async def complete_turn(self, request: CompletionRequest) -> str:
        """Get the assistant reply, recording both turns when the request is stateful."""
        if not request.stateful:
            debug_print("👤 No 'user' field detected, entering stateless mode.")
            return await self._request_with_retry(request.content, request.model, new_conversation_id())

        debug_print(f"👤 Detected 'user' field, entering stateful mode. User: {request.user}")
        async with self.sessions.turn(request.user) as session:
            prompt = build_contextual_prompt(session.history, request.content)
            reply = await self._request_with_retry(prompt, request.model, session.conversation_id)
            updated = self.sessions.append(
                request.user,
                {"role": "user", "content": request.content},
                {"role": "assistant", "content": reply},
            )
            if updated:
                debug_print(f"💾 Session '{request.user}' context has been updated.")
        return reply

    async def _request_with_retry(self, prompt: str, model: str, conversation_id: str) -> str:
        attempt = 1
        while True:
            is_retry = attempt > 1
            if is_retry:
                debug_print("⚠️  Attempting to refresh nonce and retry...")
            try:
                return await self._attempt(prompt, model, conversation_id, is_retry=is_retry)
            except UpstreamError as e:
                debug_print(f"❌ Error requesting upstream service (attempt {attempt}): {e.message}")
                if attempt >= MAX_UPSTREAM_ATTEMPTS:
                    raise
            attempt += 1

    async def _attempt(self, prompt: str, model: str, conversation_id: str, *, is_retry: bool) -> str:
        try:
            nonce = await self.nonce_provider.acquire(force_refresh=is_retry)
        except NonceError as e:
            raise UpstreamError(
                f"Unable to get necessary dynamic parameters from upstream service: {e.message}"
            ) from e
        payload = prepare_payload(prompt, model, conversation_id, nonce, self.model_map)
        return await self.upstream.send_message(payload)


async def api_chat_completions(core, request):  # noqa: ANN001
    debug_print("\n" + "=" * 80 + "\n🔵 NEW API REQUEST RECEIVED\n" + "=" * 80)

    try:
        try:
            body = await request.json()
        except ValueError as e:
            debug_print(f"❌ Invalid JSON in request body: {e}")
            return JSONResponse(status_code=400, content={"error": f"Invalid JSON in request body: {e}"})

        service = core.get_chat_service()
        try:
            completion = service.prepare(body)
        except (InvalidRequestError, UnsupportedModelError) as e:
            debug_print(f"❌ Rejected request: {e.message}")
            return JSONResponse(status_code=int(e.status_code), content={"error": e.message})

        debug_print(
            f"🤖 Model={completion.model} | 💬 Messages={completion.message_count} | "
            f"👤 User={completion.user or '-'} | 🆔 {completion.request_id}"
        )
        return StreamingResponse(
            service.stream(completion),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )
    except HTTPException:
        raise
    except Exception as e:
        debug_print(f"❌ TOP-LEVEL EXCEPTION: {type(e).__name__}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
