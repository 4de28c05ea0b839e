import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request


def build_router(core) -> APIRouter:  # noqa: ANN001
    router = APIRouter()

    @router.get("/")
    async def root():
        return {
            "message": f"Welcome to {core.APP_NAME} v{core.APP_VERSION}. Service is running normally."
        }

    @router.get("/health")
    async def health_check():
        service = core.get_chat_service()
        nonce_cached = service.nonce_provider.cached_nonce is not None
        return {
            "status": "healthy" if nonce_cached else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "nonce_cached": nonce_cached,
                "nonce_state": service.nonce_provider.state,
                "active_sessions": len(service.sessions),
                "known_models": len(service.model_map),
            },
        }

    # --- OpenAI Compatible API Endpoints ---

    @router.get("/v1/models")
    async def list_models(api_key=Depends(core.verify_api_key)):  # noqa: ARG001, ANN001
        settings = core.get_settings()
        created = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": created,
                    "owned_by": settings["owned_by"],
                }
                for model_id in core.get_known_models()
            ],
        }

    @router.post("/v1/chat/completions")
    async def chat_completions(request: Request, api_key=Depends(core.verify_api_key)):  # noqa: ARG001, ANN001
        return await core.api_chat_completions(request)

    return router
