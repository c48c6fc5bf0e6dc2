# harvester/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging
from contextlib import asynccontextmanager

from harvester import __version__
from harvester.api.endpoints import runs, health
from harvester.api.middleware import RequestLoggingMiddleware
from harvester.config.settings import settings
from harvester.core.exceptions import CustomHTTPException
from harvester.core.pipeline import PipelineOrchestrator, RunStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events"""
    logging.info("🚀 Starting Creator Content Harvester...")
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = PipelineOrchestrator()
    if getattr(app.state, "run_store", None) is None:
        app.state.run_store = RunStore()
    logging.info("🎉 Application startup completed")

    yield

    logging.info("🔄 Shutting down Creator Content Harvester...")
    try:
        await app.state.run_store.shutdown()
        await app.state.orchestrator.shutdown()
        logging.info("👋 Application shutdown completed")
    except Exception as e:
        logging.error(f"❌ Shutdown error: {e}")

def create_app() -> FastAPI:
    app = FastAPI(
        title="Creator Content Harvester",
        description="Extracts a creator's writing from blogs, newsletters, Twitter/X and LinkedIn",
        version=__version__,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan
    )

    # Add middleware
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(runs.router, prefix="/api/v1", tags=["runs"])
    app.include_router(health.router, prefix="/health", tags=["health"])

    @app.exception_handler(CustomHTTPException)
    async def custom_exception_handler(request: Request, exc: CustomHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "error_code": exc.error_code,
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/")
    async def root():
        return {"message": "Creator Content Harvester", "status": "running", "version": __version__}

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "harvester.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG
    )
