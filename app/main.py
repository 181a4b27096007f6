# app/main.py
import logging
import os
import time
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from app.modules.router import router as modules_router
from core.config import perform_warmup, settings, wire_services
from core.logging import get_logger

logger = get_logger(__name__)


def create_app(chat_service=None) -> FastAPI:
    """Build the API; a prebuilt ``chat_service`` skips settings-based wiring."""
    app = FastAPI(title="Memory Chat")
    if chat_service is None:
        wire_services(app)
    else:
        app.state.settings = settings
        app.state.chat_service = chat_service
    app.include_router(modules_router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({(time.perf_counter() - t0) * 1000:.1f} ms)"
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    media_dir = Path(settings.IMAGE_STORE_DIR)
    media_dir.mkdir(parents=True, exist_ok=True)
    app.mount(settings.IMAGE_BASE_URL, StaticFiles(directory=str(media_dir)), name="media")

    @app.api_route("/healthz", methods=["GET", "HEAD"], include_in_schema=False)
    async def healthz():
        return JSONResponse({"status": "ok"})

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting Memory Chat API...")
        try:
            from app.services.memory.init_db import init_database

            logger.info("Initializing chat memory database...")
            await init_database()
        except Exception as exc:
            logger.warning(f"Failed to initialize chat memory database: {exc}")
        await perform_warmup(app)
        logger.info("Application startup completed successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        try:
            await app.state.chat_service.queue.close()
        except Exception as exc:
            logger.warning(f"Queue shutdown failed: {exc}")

    for route in app.routes:
        logging.getLogger("router.map").debug(
            "ROUTE %s %s", ",".join(sorted(getattr(route, "methods", None) or [])), getattr(route, "path", "")
        )

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app.main:app", host="0.0.0.0", port=port)
