from typing import Mapping, Optional

import httpx

from .debug import debug_print, log_http_status
from .errors import UnsupportedModelError, UpstreamError
from .nonce import DEFAULT_USER_AGENT

UPSTREAM_ACTION = "kimi_send_message"

# Client-facing model id -> id the upstream form expects
DEFAULT_MODEL_MAP = {
    "kimi-k2-instruct-0905": "moonshotai/Kimi-K2-Instruct-0905",
    "kimi-k2-instruct": "moonshotai/Kimi-K2-Instruct",
}


def resolve_upstream_model(model: object, model_map: Optional[Mapping[str, str]] = None) -> str:
    table = DEFAULT_MODEL_MAP if model_map is None else model_map
    if not isinstance(model, str) or model not in table:
        raise UnsupportedModelError(model)
    return table[model]


def prepare_payload(
    prompt: str,
    model: str,
    conversation_id: str,
    nonce: str,
    model_map: Optional[Mapping[str, str]] = None,
) -> dict:
    return {
        "action": UPSTREAM_ACTION,
        "nonce": nonce,
        "message": prompt,
        "model": resolve_upstream_model(model, model_map),
        "session_id": conversation_id,
    }


def parse_upstream_response(body: object) -> str:
    """Extract the assistant message from `{success, data: {message} | str}`."""
    if not isinstance(body, dict):
        raise UpstreamError("Upstream returned an unexpected response body.")

    data = body.get("data")
    if not body.get("success"):
        detail = data if isinstance(data, str) and data else "Unknown error"
        if isinstance(data, dict) and data.get("message"):
            detail = data["message"]
        raise UpstreamError(f"Upstream request failed: {detail}")

    if isinstance(data, dict):
        message = data.get("message")
        return message if isinstance(message, str) else ""
    if isinstance(data, str):
        return data
    return ""


class KimiUpstreamClient:
    """Posts chat forms to the upstream AJAX endpoint."""

    def __init__(
        self,
        upstream_url: str,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.upstream_url = upstream_url
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send_message(self, payload: dict) -> str:
        debug_print(
            f"📤 Sending request to upstream, Session ID: {payload.get('session_id')}, Model: {payload.get('model')}"
        )
        headers = {
            "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            "User-Agent": self.user_agent,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
                response = await client.post(self.upstream_url, data=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Request to upstream timed out after {self.timeout_seconds} seconds") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Unable to reach upstream: {type(e).__name__}: {e}") from e

        log_http_status(response.status_code, "upstream chat")
        if not response.is_success:
            raise UpstreamError(
                f"Upstream API error, status code: {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            debug_print(f"📥 Response text: {response.text[:500]}")
            raise UpstreamError("Upstream returned a non-JSON response.", upstream_status=response.status_code) from e

        return parse_upstream_response(body)
