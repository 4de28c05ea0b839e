import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import APIKeyHeader

from . import chat_completions
from .api_server import build_router
from .chat_completions import ChatCompletionService
from .debug import debug_print
from .errors import NonceError
from .nonce import DEFAULT_USER_AGENT, NonceProvider
from .sessions import SessionStore
from .upstream import DEFAULT_MODEL_MAP, KimiUpstreamClient

# ============================================================
# CONFIGURATION
# ============================================================
APP_NAME = "kimi-bridge"
APP_VERSION = "1.0.0"
DESCRIPTION = "OpenAI-compatible bridge for the kimi-ai.chat web chat."

CONFIG_FILE = "config.json"

# Empty key or "1" turns bearer auth off
DEFAULT_API_MASTER_KEY = "sk-kimi-bridge-default-key-please-change-me"
AUTH_DISABLED_KEYS = {"", "1"}

DEFAULT_PORT = 8088
DEFAULT_SESSION_TTL_SECONDS = 3600
DEFAULT_UPSTREAM_URL = "https://kimi-ai.chat/wp-admin/admin-ajax.php"
DEFAULT_CHAT_PAGE_URL = "https://kimi-ai.chat/chat/"

API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)

# Tests swap in an httpx.MockTransport here before startup.
UPSTREAM_TRANSPORT: Optional[httpx.AsyncBaseTransport] = None

# --- Global State (rebuilt by configure_state on startup) ---
SETTINGS: Optional[dict] = None
NONCE_PROVIDER: Optional[NonceProvider] = None
SESSION_STORE: Optional[SessionStore] = None
CHAT_SERVICE: Optional[ChatCompletionService] = None
SESSION_SWEEPER_TASK: Optional[asyncio.Task] = None


def _coerce_number(value, default, minimum, cast=int):  # noqa: ANN001
    try:
        number = cast(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, number)


def get_config() -> dict:
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            config = json.load(f)
    except FileNotFoundError:
        config = {}
    except json.JSONDecodeError as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}
    if not isinstance(config, dict):
        debug_print("⚠️  Config file is not a JSON object, using defaults")
        config = {}

    config.setdefault("api_master_key", DEFAULT_API_MASTER_KEY)
    config.setdefault("port", DEFAULT_PORT)
    config.setdefault("session_cache_ttl", DEFAULT_SESSION_TTL_SECONDS)
    config.setdefault("session_sweep_interval", 60)
    config.setdefault("upstream_url", DEFAULT_UPSTREAM_URL)
    config.setdefault("chat_page_url", DEFAULT_CHAT_PAGE_URL)
    config.setdefault("model_map", dict(DEFAULT_MODEL_MAP))
    config.setdefault("default_model", "")
    config.setdefault("owned_by", "kimi-ai")
    config.setdefault("typing_delay_seconds", 0.02)
    config.setdefault("request_timeout_seconds", 60)
    config.setdefault("user_agent", DEFAULT_USER_AGENT)
    config.setdefault("prefetch_nonce_on_startup", True)

    # Deployment knobs can come from the environment (e.g. a .env loaded by the process manager)
    env_overrides = {
        "API_MASTER_KEY": "api_master_key",
        "PORT": "port",
        "SESSION_CACHE_TTL": "session_cache_ttl",
        "UPSTREAM_URL": "upstream_url",
        "CHAT_PAGE_URL": "chat_page_url",
    }
    for env_name, key in env_overrides.items():
        value = os.environ.get(env_name)
        if value is not None:
            config[key] = value.strip()

    config["api_master_key"] = str(config.get("api_master_key") or "").strip()
    config["port"] = _coerce_number(config["port"], DEFAULT_PORT, 1)
    config["session_cache_ttl"] = _coerce_number(config["session_cache_ttl"], DEFAULT_SESSION_TTL_SECONDS, 1)
    config["session_sweep_interval"] = _coerce_number(config["session_sweep_interval"], 60.0, 0.1, float)
    config["typing_delay_seconds"] = _coerce_number(config["typing_delay_seconds"], 0.02, 0.0, float)
    config["request_timeout_seconds"] = _coerce_number(config["request_timeout_seconds"], 60.0, 1.0, float)

    model_map = config.get("model_map")
    if not isinstance(model_map, dict) or not model_map:
        debug_print("⚠️  Invalid 'model_map' in config, using built-in models")
        model_map = dict(DEFAULT_MODEL_MAP)
    config["model_map"] = {str(k): str(v) for k, v in model_map.items()}
    if config.get("default_model") not in config["model_map"]:
        config["default_model"] = next(iter(config["model_map"]))

    return config


def configure_state(config: dict) -> ChatCompletionService:
    """Build the nonce provider, session store and chat service from a config dict."""
    global SETTINGS, NONCE_PROVIDER, SESSION_STORE, CHAT_SERVICE

    SETTINGS = config
    NONCE_PROVIDER = NonceProvider(
        config["chat_page_url"],
        user_agent=config["user_agent"],
        timeout_seconds=config["request_timeout_seconds"],
        transport=UPSTREAM_TRANSPORT,
    )
    SESSION_STORE = SessionStore(config["session_cache_ttl"])
    CHAT_SERVICE = ChatCompletionService(
        nonce_provider=NONCE_PROVIDER,
        session_store=SESSION_STORE,
        upstream=KimiUpstreamClient(
            config["upstream_url"],
            user_agent=config["user_agent"],
            timeout_seconds=config["request_timeout_seconds"],
            transport=UPSTREAM_TRANSPORT,
        ),
        model_map=config["model_map"],
        default_model=config["default_model"],
        typing_delay_seconds=config["typing_delay_seconds"],
    )
    return CHAT_SERVICE


def get_settings() -> dict:
    if SETTINGS is None:
        configure_state(get_config())
    return SETTINGS


def get_chat_service() -> ChatCompletionService:
    if CHAT_SERVICE is None:
        configure_state(get_config())
    return CHAT_SERVICE


def get_known_models() -> List[str]:
    return list(get_settings()["model_map"])


# --- API Key Authentication ---

async def verify_api_key(authorization: Optional[str] = Depends(API_KEY_HEADER)):
    api_master_key = get_settings()["api_master_key"]
    if api_master_key in AUTH_DISABLED_KEYS:
        return None

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Bearer Token authentication required.")

    token = authorization[7:].strip()
    if token != api_master_key:
        raise HTTPException(status_code=403, detail="Invalid API Key.")
    return token


# --- Lifecycle ---

async def startup_event():
    global SESSION_SWEEPER_TASK

    config = get_config()
    configure_state(config)
    debug_print(f"🚀 {APP_NAME} v{APP_VERSION} starting, models: {', '.join(config['model_map'])}")

    if config.get("prefetch_nonce_on_startup"):
        debug_print("🔑 Prefetching nonce...")
        try:
            await NONCE_PROVIDER.acquire()
        except NonceError as e:
            debug_print(f"⚠️  Startup nonce prefetch failed: {e}")

    SESSION_SWEEPER_TASK = asyncio.create_task(
        SESSION_STORE.run_expiry_sweeper(config["session_sweep_interval"])
    )


async def shutdown_event():
    global SESSION_SWEEPER_TASK

    task = SESSION_SWEEPER_TASK
    SESSION_SWEEPER_TASK = None
    if task is not None and not task.done():
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    await startup_event()
    try:
        yield
    finally:
        await shutdown_event()


app = FastAPI(title=APP_NAME, version=APP_VERSION, description=DESCRIPTION, lifespan=lifespan)


async def api_chat_completions(request: Request):
    return await chat_completions.api_chat_completions(sys.modules[__name__], request)


app.include_router(build_router(sys.modules[__name__]))


def main():
    port = get_settings()["port"]
    print("=" * 60)
    print(f"🚀 {APP_NAME} v{APP_VERSION} Starting...")
    print("=" * 60)
    print(f"📚 API Base URL: http://localhost:{port}/v1")
    print(f"🤖 Models: {', '.join(get_known_models())}")
    print("=" * 60)
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
