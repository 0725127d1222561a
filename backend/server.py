"""Device Coordinator — entry point.

Real-time coordinator for wearable devices: connection admission, the
per-device session state machine, the Redis session store, the cleanup
sweeper and per-user fan-out.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, APIRouter, WebSocket, HTTPException, Request
from pydantic import ValidationError
from starlette.middleware.cors import CORSMiddleware

# Load env before anything else
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

from config.settings import Settings, get_settings
from config.validators import validate_startup_config
from core.exceptions import AuthenticationError
from core.logging_config import setup_logging
from gateway.contracts import WS_PROTOCOL_VERSION
from gateway.fanout import NotificationFanout
from gateway.registry import ConnectionRegistry
from gateway.ws_server import DeviceGateway
from observability.redaction import redact_dict
from provider.elevenlabs import SIGNATURE_HEADER, parse_post_call, verify_webhook_signature
from provider.interface import ConversationProvider
from provider.orchestrator import create_conversation_provider
from schemas.post_call import PostCallEvent
from sessions.state_machine import SessionStateMachine
from sessions.sweeper import CleanupSweeper
from store.session_store import SessionStore

# ---- Setup logging ----
setup_logging()
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    redis_client: Optional[Any] = None,
    provider: Optional[ConversationProvider] = None,
    start_sweeper: bool = True,
) -> FastAPI:
    """Build one coordinator instance. Collaborators may be injected for tests."""
    settings = settings or get_settings()

    # ---- Lifespan ----
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Coordinator starting — env=%s", settings.ENV)
        validate_startup_config(settings)

        store = SessionStore(settings, client=redis_client)
        await store.connect()
        registry = ConnectionRegistry()
        fanout = NotificationFanout(registry)
        conversation_provider = provider or create_conversation_provider(settings)
        machine = SessionStateMachine(store, conversation_provider, fanout, registry, settings)
        sweeper = CleanupSweeper(machine, store, settings)

        app.state.store = store
        app.state.registry = registry
        app.state.provider = conversation_provider
        app.state.machine = machine
        app.state.sweeper = sweeper
        app.state.gateway = DeviceGateway(registry, machine, store, settings)

        if start_sweeper:
            sweeper.start()
        logger.info("Coordinator ready")
        yield
        await sweeper.stop()
        await store.close()
        logger.info("Coordinator shutdown complete")

    # ---- App ----
    app = FastAPI(
        title="Device Coordinator",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    api_router = APIRouter(prefix="/api")

    # ---- Health ----
    @api_router.get("/health")
    async def health(request: Request):
        state = request.app.state
        store_reachable = await state.store.health_check()
        return {
            "status": "ok" if store_reachable or state.store.degraded_mode else "degraded",
            "env": settings.ENV,
            "protocol": WS_PROTOCOL_VERSION,
            "store": {**state.store.get_status(), "reachable": store_reachable},
            "provider": {
                **state.provider.get_status(),
                "healthy": await state.provider.is_healthy(),
            },
            "connections": state.registry.count(),
            "sessions": state.machine.get_status(),
            "sweeper": state.sweeper.get_status(),
        }

    # ---- Provider post-call webhook ----
    @api_router.post("/provider/post-call")
    async def post_call(request: Request):
        raw = await request.body()
        if settings.ELEVENLABS_WEBHOOK_SECRET:
            try:
                verify_webhook_signature(
                    raw, request.headers.get(SIGNATURE_HEADER), settings.ELEVENLABS_WEBHOOK_SECRET,
                )
            except AuthenticationError as e:
                logger.warning("Post-call webhook rejected: %s", e.message)
                raise HTTPException(status_code=401, detail=e.message)

        try:
            event = PostCallEvent.model_validate_json(raw)
        except ValidationError:
            raise HTTPException(status_code=400, detail="Invalid post-call payload")
        logger.debug("Post-call payload: %s", redact_dict(event.model_dump()))

        summary = parse_post_call(event)
        if summary is None:
            logger.info("Post-call event ignored: type=%s", event.type)
            return {"received": True, "processed": False}

        session_id = await request.app.state.machine.apply_conversation_summary(summary)
        return {
            "received": True,
            "processed": session_id is not None,
            "session_id": session_id,
            "conversation_id": summary.conversation_id,
        }

    app.include_router(api_router)

    # =====================================================
    #  WebSocket Endpoint
    # =====================================================

    @app.websocket("/ws/device")
    async def websocket_endpoint(websocket: WebSocket):
        """Device and companion WebSocket endpoint."""
        await websocket.app.state.gateway.handle(websocket)

    return app


app = create_app()
