import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api.health.router import router as health_router
from app.api.knowledge.router import knowledge_error_handler, router as knowledge_router
from app.config.logger import app_logger, log_request_end, log_request_error, log_request_start
from app.config.settings import settings
from app.db.db import close_db, init_db
from app.services.errors import KnowledgeBaseError
from app.services.knowledge_base import shutdown_knowledge_base


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_logger.info(f"{settings.APP_NAME} starting up")
    app_logger.info(f"Logging to console and {settings.LOG_DIR}/")

    await init_db()
    if not settings.OPENAI_API_KEY:
        app_logger.warning("OPENAI_API_KEY not set; knowledge endpoints will return 503")
    if not settings.ITOP_BASE_URL:
        app_logger.warning("ITOP_BASE_URL not set; incident and change syncs will return 503")

    yield

    app_logger.info(f"{settings.APP_NAME} shutting down")
    await shutdown_knowledge_base()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    servers=[{"url": "http://localhost:8000", "description": "Development server"}],
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(KnowledgeBaseError, knowledge_error_handler)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its wall-clock duration."""
    started = time.perf_counter()
    log_request_start(request)
    try:
        response = await call_next(request)
    except Exception as e:
        log_request_error(request, e, time.perf_counter() - started)
        raise
    log_request_end(request, response.status_code, time.perf_counter() - started)
    return response


app.include_router(health_router)
app.include_router(knowledge_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=None)
