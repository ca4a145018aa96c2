from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from core.config import ConfigManager
from core.controller import CookAlongController


def create_app(config_manager: ConfigManager, controller: CookAlongController) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(title="Cook-Along Voice Assistant", version="1.0.0")

    # CORS for the companion app on the local network
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config_manager = config_manager
    app.state.controller = controller

    from api.routes.session import router as session_router
    from api.routes.settings import router as settings_router

    app.include_router(session_router, prefix="/api/session", tags=["session"])
    app.include_router(settings_router, prefix="/api/settings", tags=["settings"])

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "session_state": controller.state.value,
            "mode": controller.mode.value,
            "speech_available": controller.speech_available,
            "provider": config_manager.config.provider,
        }

    # Mounted last: "/" catches everything
    static_dir = Path(__file__).resolve().parent.parent / "static"
    if static_dir.exists():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")

    return app
