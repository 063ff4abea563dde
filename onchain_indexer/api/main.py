from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import time

from onchain_indexer.api.routers.health import router as health_router
from onchain_indexer.api.routers.sessions import router as sessions_router
from onchain_indexer.config import settings
from onchain_indexer.utils.logging import setup_logging

setup_logging(settings.LOG_LEVEL)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "manager", None) is None:
        from onchain_indexer.main import build_manager

        app.state.manager = build_manager()
        app.state.manager.orchestrator.start_health_checks()
    yield
    app.state.manager.shutdown()


app = FastAPI(
    title="On-chain Indexer",
    description="Multi-chain contract indexing API",
    version=settings.INDEXER_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router, tags=["Indexing"])
app.include_router(health_router, tags=["Health"])


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def log_requests(request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time=round(process_time, 3),
    )
    return response


@app.get("/")
async def root():
    return {"message": "On-chain Indexer API", "version": settings.INDEXER_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
