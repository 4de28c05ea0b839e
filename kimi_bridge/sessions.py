import asyncio
import secrets
import string
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

from .debug import debug_print

_BASE36 = string.digits + string.ascii_lowercase


def new_conversation_id() -> str:
    """Conversation id in the upstream's own `session_<ms>_<random>` shape."""
    timestamp_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"session_{timestamp_ms}_{suffix}"


@dataclass
class ChatSession:
    user_key: str
    conversation_id: str
    created_at: float
    expires_at: float
    history: List[dict] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionStore:
    """Per-user conversation state with a fixed lifetime.

    Each session gets a deadline when it is created; reading it does not move
    the deadline. Expired entries are dropped lazily on access and by
    `sweep_expired`, which `run_expiry_sweeper` calls periodically.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._sessions: Dict[str, ChatSession] = {}
        self._turn_locks: Dict[str, asyncio.Lock] = {}
        self._turn_waiters: Dict[str, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __len__(self) -> int:
        self.sweep_expired()
        return len(self._sessions)

    def __contains__(self, user_key: object) -> bool:
        return isinstance(user_key, str) and self.get(user_key) is not None

    def _ensure_loop(self) -> None:
        """Recreate the per-key locks when the running event loop changes."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is loop:
            return
        self._loop = loop
        self._turn_locks = {}
        self._turn_waiters = {}

    def get(self, user_key: str) -> Optional[ChatSession]:
        session = self._sessions.get(user_key)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._evict(user_key)
            return None
        return session

    def get_or_create(self, user_key: str) -> ChatSession:
        session = self.get(user_key)
        if session is not None:
            return session

        now = self._clock()
        session = ChatSession(
            user_key=user_key,
            conversation_id=new_conversation_id(),
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self._sessions[user_key] = session
        debug_print(f"🆕 Created new session for user '{user_key}': {session.conversation_id}")
        return session

    def append(self, user_key: str, user_turn: dict, assistant_turn: dict) -> bool:
        """Record one completed round trip. Returns False if the session is already gone."""
        session = self.get(user_key)
        if session is None:
            debug_print(f"⚠️  Session '{user_key}' expired before its turn completed; history not saved.")
            return False
        session.history.append(dict(user_turn))
        session.history.append(dict(assistant_turn))
        return True

    def _evict(self, user_key: str) -> None:
        if self._sessions.pop(user_key, None) is not None:
            debug_print(f"🗑️  Session '{user_key}' has expired and been cleared.")

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
        for key in expired:
            self._evict(key)
        return len(expired)

    async def run_expiry_sweeper(self, interval_seconds: float) -> None:
        """Evict expired sessions every `interval_seconds` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep_expired()
            except Exception as e:
                debug_print(f"❌ Error in session sweeper: {e}")

    @asynccontextmanager
    async def turn(self, user_key: str) -> AsyncIterator[ChatSession]:
        """Hold the per-user lock for one turn and yield the live session.

        Concurrent turns for the same key queue up behind each other so each
        one sees the history the previous one wrote.
        """
        self._ensure_loop()
        lock = self._turn_locks.get(user_key)
        if lock is None:
            lock = self._turn_locks[user_key] = asyncio.Lock()
        self._turn_waiters[user_key] = self._turn_waiters.get(user_key, 0) + 1
        try:
            async with lock:
                yield self.get_or_create(user_key)
        finally:
            remaining = self._turn_waiters.get(user_key, 1) - 1
            if remaining <= 0:
                self._turn_waiters.pop(user_key, None)
                self._turn_locks.pop(user_key, None)
            else:
                self._turn_waiters[user_key] = remaining
