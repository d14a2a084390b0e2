"""
FastAPI server for Blockflow.

Provides REST API endpoints for:
- Synchronous workflow execution and graph validation
- Queued execution and app webhook intake

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.middleware.auth import JWTAuthMiddleware
from api.webhooks.router import router as webhooks_router
from api.workflows.router import router as workflows_router
from shared.database import db_lifespan, get_postgres_client
from shared.logger import get_logger
from workflow_engine.errors import WorkflowEngineError
from workflow_engine.introspection import TableRegistry

logger = get_logger("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Blockflow API server")
    async with db_lifespan(app):
        await TableRegistry(get_postgres_client()).ensure_schema()
        logger.info("Database initialized")
        yield
    logger.info("Blockflow API server shutting down")


app = FastAPI(
    title="Blockflow API",
    description="Execution API for Blockflow workflow graphs",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(workflows_router)
app.include_router(webhooks_router)

# Authentication middleware - register BEFORE CORS to ensure user is set
app.add_middleware(
    JWTAuthMiddleware,
    allow_unauthenticated_paths=["/health", "/v1/webhooks"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowEngineError)
async def engine_error_handler(request: Request, exc: WorkflowEngineError):
    logger.warning(f"Engine error: {exc.message}", extra={"code": exc.code.value, "path": request.url.path})
    return JSONResponse(status_code=400, content={"detail": exc.message, "code": exc.code.value})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health", tags=["System"])
async def health_check():
    """Liveness probe."""
    return {"status": "ok", "server": "Blockflow API", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
