"""
cartsync - FastAPI application

Serves the web cart endpoints. Run with:
    uvicorn cartsync.app:app
"""
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cartsync import __version__
from cartsync.logging import get_logger
from cartsync.routers import cart_router

logger = get_logger(__name__)

WEBAPP_URL = os.environ.get("WEBAPP_URL", "")


def create_app() -> FastAPI:
    app = FastAPI(title="cartsync", version=__version__)

    origins = [WEBAPP_URL] if WEBAPP_URL else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cart-Session"],
    )

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok", "version": __version__}

    app.include_router(cart_router)
    return app


app = create_app()
