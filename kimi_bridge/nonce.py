import asyncio
import json
import re
from typing import Optional

import httpx

from .debug import debug_print, log_http_status, redact
from .errors import TokenExtractionError, UpstreamUnavailableError

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)
NONCE_VARIABLE = "kimi_ajax"


def extract_nonce(html: str, variable_name: str = NONCE_VARIABLE) -> str:
    """Pull the nonce out of the `var <name> = {...};` literal embedded in the chat page."""
    pattern = re.compile(r"var\s+" + re.escape(variable_name) + r"\s*=\s*(\{.*?\});")
    match = pattern.search(html or "")
    if not match:
        raise TokenExtractionError(f"'{variable_name}' JS variable not found in page HTML.")

    try:
        ajax_data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise TokenExtractionError(f"'{variable_name}' object is not valid JSON: {e}") from e

    nonce = ajax_data.get("nonce") if isinstance(ajax_data, dict) else None
    if not nonce or not isinstance(nonce, str):
        raise TokenExtractionError(f"'nonce' field missing in '{variable_name}' object.")
    return nonce


class NonceProvider:
    """Single-flight cache for the anti-forgery nonce scraped from the chat page.

    States: idle (nothing cached, nothing running), fetching (one shared task
    that every non-forced caller awaits) and cached (a value from the last
    successful fetch). A forced refresh drops the cached value and starts a new
    fetch; callers already waiting on the old fetch still get its result.
    """

    def __init__(
        self,
        chat_page_url: str,
        *,
        variable_name: str = NONCE_VARIABLE,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.chat_page_url = chat_page_url
        self.variable_name = variable_name
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._nonce: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.fetch_count = 0

    @property
    def cached_nonce(self) -> Optional[str]:
        return self._nonce

    @property
    def state(self) -> str:
        if self._task is not None and not self._task.done():
            return "fetching"
        if self._nonce is not None:
            return "cached"
        return "idle"

    def _ensure_loop(self) -> None:
        """Drop an in-flight task that belongs to a previous event loop.

        `IsolatedAsyncioTestCase` and `TestClient` each run their own loop, and a
        task from a closed loop can never be awaited again. The cached value is
        kept.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is loop:
            return
        self._loop = loop
        self._task = None

    def invalidate(self) -> None:
        self._nonce = None
        self._task = None

    async def acquire(self, force_refresh: bool = False) -> str:
        self._ensure_loop()
        if force_refresh:
            debug_print("🔄 Forcing nonce refresh...")
            self.invalidate()

        if self._nonce is not None:
            return self._nonce

        task = self._task
        if task is None:
            task = asyncio.create_task(self._fetch_nonce())
            task.add_done_callback(self._on_fetch_done)
            self._task = task

        # Shield so a cancelled waiter doesn't cancel the fetch the others share.
        return await asyncio.shield(task)

    def _on_fetch_done(self, task: asyncio.Task) -> None:
        if task is not self._task:
            # Superseded by a forced refresh; its waiters already hold the result.
            if not task.cancelled():
                task.exception()
            return
        self._task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._nonce = task.result()

    async def _fetch_nonce(self) -> str:
        self.fetch_count += 1
        debug_print(f"🔑 Fetching new nonce from {self.chat_page_url}...")
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.timeout_seconds,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            ) as client:
                response = await client.get(self.chat_page_url)
        except httpx.HTTPError as e:
            debug_print(f"❌ Failed to fetch nonce: {e}")
            raise UpstreamUnavailableError(
                f"Unable to reach upstream chat page: {type(e).__name__}: {e}"
            ) from e

        log_http_status(response.status_code, "chat page")
        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Failed to fetch upstream page, status code: {response.status_code}"
            )

        try:
            nonce = extract_nonce(response.text, self.variable_name)
        except TokenExtractionError as e:
            debug_print(f"❌ Failed to fetch nonce: {e.message}")
            raise

        debug_print(f"✅ Fetched new nonce: {redact(nonce)}")
        return nonce
