"""Liveness, build info and dependency health."""

import os
import subprocess
from functools import lru_cache

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config.logger import app_logger
from app.config.settings import settings
from app.db.db import ping_database

router = APIRouter(tags=["health"])


@lru_cache(maxsize=1)
def get_git_sha() -> str:
    """Short commit hash of the checkout, or ``local-dev`` outside a git tree."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short=8", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=1.0,
        )
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        return "local-dev"
    return result.stdout.strip()


def build_info() -> dict:
    # CI injects these; GIT_SHA wins over GITHUB_SHA and ENVIRONMENT over ENV
    return {
        "build": os.getenv("BUILD_NUMBER", "local-dev"),
        "sha": os.getenv("GIT_SHA") or os.getenv("GITHUB_SHA") or get_git_sha(),
        "env": os.getenv("ENVIRONMENT") or os.getenv("ENV") or "development",
    }


@router.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "status": "operational",
        "docs": "/docs",
        "redoc": "/redoc",
    }


@router.get("/status")
async def status():
    """Build information for CI/CD monitoring."""
    return {"status": "ok", **build_info()}


@router.get("/health/db")
async def health_db():
    is_ok, message = await ping_database()
    if not is_ok:
        app_logger.warning(f"Database health check failed: {message}")
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "unavailable", "message": message},
        )
    return {"status": "ok", "db": "available", "message": message}
