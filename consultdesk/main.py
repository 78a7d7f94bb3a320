# Backend entrypoint: `uvicorn consultdesk.main:app`
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response

from . import metrics
from .api import artifact_routes, session_routes, widget_routes, ws_routes
from .config import Settings
from .db.state_store import StateStore
from .logging_utils import configure_logging, emit_event
from .session.context import SessionRegistry
from .ws_manager import WebSocketManager


def build_registry(settings: Settings, ws_manager: WebSocketManager) -> SessionRegistry:
    return SessionRegistry(settings, StateStore(settings.state_db), broadcast=ws_manager.broadcast)


def create_app(settings: Optional[Settings] = None, registry: Optional[SessionRegistry] = None) -> FastAPI:
    """Build the FastAPI app. Tests pass a registry wired with fakes."""
    configure_logging()
    settings = settings or Settings.from_env()
    ws_manager = WebSocketManager()
    if registry is None:
        registry = build_registry(settings, ws_manager)
    elif registry.broadcast is None:
        registry.broadcast = ws_manager.broadcast

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        emit_event('service_started', service_url=settings.service_url,
                   device_capture=settings.enable_device_capture)
        yield
        await app.state.registry.shutdown()

    app = FastAPI(title='consultdesk session core', lifespan=lifespan)
    app.state.settings = settings
    app.state.ws_manager = ws_manager
    app.state.registry = registry

    app.include_router(session_routes.router)
    app.include_router(widget_routes.router)
    app.include_router(artifact_routes.router)
    app.include_router(ws_routes.router)

    @app.get('/api/status')
    async def status():
        return {'ok': True, 'sessions': len(app.state.registry),
                'device_capture': settings.enable_device_capture}

    @app.get('/metrics')
    async def prometheus_metrics():
        body, content_type = metrics.render_latest()
        return Response(content=body, media_type=content_type)

    return app


app = create_app()
