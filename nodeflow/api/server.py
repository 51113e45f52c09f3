"""
FastAPI server for nodeflow
"""
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import router
from .. import __version__
from ..core.config import Config
from ..core.execution import ExecutionEngine
from ..core.services import HttpServices


def create_app(engine: Optional[ExecutionEngine] = None, services: Any = None) -> FastAPI:
    """
    Build the API application

    Args:
        engine: Engine used by the routes (default: a fresh ExecutionEngine)
        services: Adapter handle passed to every execution (default: HttpServices)
    """
    app = FastAPI(title="nodeflow API", version=__version__)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine or ExecutionEngine()
    app.state.services = services if services is not None else HttpServices()

    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": "nodeflow",
            "version": __version__,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "concurrency": Config.DEFAULT_CONCURRENCY
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT)
