"""
Composed FastAPI Dependencies

Combines caller identity + DB session + storage + Celery publisher into the
service objects route handlers use. Route handlers import from here, never
from db/session or storage/s3 directly.

Identity: authentication happens at the upstream gateway, which forwards the
caller as the X-User-ID header. A request without it is rejected with 401.
"""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import get_db
from app.processing.unified import UnifiedProcessor
from app.schemas.processing import ErrorResponse
from app.services.async_jobs import AsyncJobManager, JobPublisher
from app.storage.s3 import S3StorageService


# ---------------------------------------------------------------------------
# 1. Caller identity
# ---------------------------------------------------------------------------

def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=ErrorResponse(error_code="UNAUTHORIZED", message=message).model_dump(),
    )


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    if not x_user_id or not x_user_id.strip():
        raise _unauthorized("Missing X-User-ID header.")
    return x_user_id.strip()


async def verify_webhook_secret(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Authorization: Bearer <webhook_secret>; constant-time comparison."""
    secret = settings.webhook_secret
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not secret
        or scheme.lower() != "bearer"
        or not hmac.compare_digest(token.strip().encode(), secret.encode())
    ):
        raise _unauthorized("Invalid webhook credentials.")


# ---------------------------------------------------------------------------
# 2. Infrastructure
# ---------------------------------------------------------------------------

def get_storage() -> S3StorageService:
    return S3StorageService()


def get_publisher() -> JobPublisher:
    return JobPublisher()


# ---------------------------------------------------------------------------
# 3. Services (one instance per request)
# ---------------------------------------------------------------------------

def get_job_manager(
    db:        Annotated[AsyncSession,     Depends(get_db)],
    storage:   Annotated[S3StorageService, Depends(get_storage)],
    publisher: Annotated[JobPublisher,     Depends(get_publisher)],
) -> AsyncJobManager:
    return AsyncJobManager(db=db, storage=storage, publisher=publisher)


def get_unified_processor(
    jobs: Annotated[AsyncJobManager, Depends(get_job_manager)],
) -> UnifiedProcessor:
    return UnifiedProcessor(job_manager=jobs)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUserId = Annotated[str,              Depends(get_current_user_id)]
DB            = Annotated[AsyncSession,     Depends(get_db)]
JobManager    = Annotated[AsyncJobManager,  Depends(get_job_manager)]
Processor     = Annotated[UnifiedProcessor, Depends(get_unified_processor)]
WebhookAuth   = Depends(verify_webhook_secret)
