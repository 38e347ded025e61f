import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .alerts import AlertLifecycleManager
from .chat import ChatRouter
from .config import Config, settings as default_settings
from .errors import DispatchError
from .hub import RealtimeHub
from .routes import health_router, router
from .store import EntityStore, build_store, seed_sample_data

logger = logging.getLogger(__name__)


def _message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}", exc_info=exc.__cause__)
            return JSONResponse(status_code=exc.status_code, content={"message": "Internal server error"})
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": _message(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"message": "Internal server error"})


def create_app(settings: Optional[Config] = None, store: Optional[EntityStore] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL)

    store = store or build_store(settings)
    alerts = AlertLifecycleManager(
        store,
        release_on_resolve=settings.RELEASE_UNIT_ON_RESOLVE,
        recent_limit=settings.RECENT_LIMIT,
    )
    hub = RealtimeHub(alerts)
    chat = ChatRouter(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.SEED_SAMPLE_DATA and not await store.list_ambulances():
            await seed_sample_data(store)
            logger.info("Seeded sample ambulance units and facilities")
        hub.start_heartbeat(settings.HEARTBEAT_INTERVAL_SECONDS, settings.HEARTBEAT_GRACE_SECONDS)
        yield
        await hub.stop_heartbeat()

    app = FastAPI(title="MedAlert Dispatch API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.alerts = alerts
    app.state.hub = hub
    app.state.chat = chat

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(health_router, prefix="/health")
    app.include_router(router)

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await hub.serve(websocket)

    @app.websocket("/ws/chat")
    async def chat_endpoint(websocket: WebSocket):
        await chat.serve(websocket)

    return app


app = create_app()
