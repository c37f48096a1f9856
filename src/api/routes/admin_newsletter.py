"""
Admin newsletter publishing API endpoints.

Endpoints:
- POST /api/admin/newsletter/issues - Publish an issue (idempotent per caller + key)
- GET /api/admin/newsletter/issues/{id} - Issue details and pending deliveries
- GET /api/admin/newsletter/queue - Pending delivery count
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from src.api.deps import get_caller_id, get_clock, get_database, get_publish_config
from src.components.idempotency import (
    IdempotencyKeyError,
    LedgerCorruptionError,
    RequestInFlightError,
    SavedResponse,
)
from src.components.outbox import IssueContent, IssueValidationError, PublishConfig, publish
from src.core.ports.db import DatabasePort, StorageError
from src.core.ports.time import TimePort

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Request/Response Models ---


class PublishIssueRequest(BaseModel):
    """Newsletter issue submitted by the admin form."""

    title: str = Field(..., description="Issue title (email subject)")
    html_body: str = Field(..., description="HTML email body")
    text_body: str = Field(..., description="Plain text email body")
    idempotency_key: str = Field(..., description="Client-chosen key for safe retries")


class IssueResponse(BaseModel):
    """Published issue and its outstanding deliveries."""

    id: str
    title: str
    published_at: str
    pending_deliveries: int


class QueueResponse(BaseModel):
    """Delivery queue status."""

    pending: int


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str


# --- Helper Functions ---


def _replay(saved: SavedResponse) -> Response:
    """Rebuild the stored response exactly: status, header order, body bytes."""
    response = Response(content=saved.body, status_code=saved.status_code)
    response.raw_headers = [
        (b"content-length", str(len(saved.body)).encode("latin-1")),
        *[(name.lower().encode("latin-1"), value) for name, value in saved.headers],
    ]
    return response


# --- Endpoints ---


@router.post(
    "/issues",
    status_code=status.HTTP_303_SEE_OTHER,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Publish newsletter issue",
    description=(
        "Store the issue and enqueue one delivery per confirmed subscriber. "
        "Retrying with the same idempotency key returns the original response."
    ),
)
def publish_issue(
    request: PublishIssueRequest,
    caller_id: str = Depends(get_caller_id),
    db: DatabasePort = Depends(get_database),
    clock: TimePort = Depends(get_clock),
    config: PublishConfig = Depends(get_publish_config),
) -> Response:
    content = IssueContent(
        title=request.title,
        html_body=request.html_body,
        text_body=request.text_body,
    )
    try:
        saved = publish(
            db, caller_id, request.idempotency_key, content, clock=clock, config=config
        )
    except (IdempotencyKeyError, IssueValidationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except RequestInFlightError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (StorageError, LedgerCorruptionError) as e:
        logger.error("Publish failed for caller %s: %s", caller_id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Publishing failed, retry with the same idempotency key",
        ) from e

    return _replay(saved)


@router.get(
    "/issues/{issue_id}",
    response_model=IssueResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get issue details",
)
def get_issue(
    issue_id: UUID,
    caller_id: str = Depends(get_caller_id),
    db: DatabasePort = Depends(get_database),
) -> IssueResponse:
    with db.begin() as uow:
        issue = uow.issues.get(issue_id)
        if issue is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Issue not found"
            )
        pending = uow.delivery_queue.count_pending(issue_id)

    return IssueResponse(
        id=str(issue.id),
        title=issue.title,
        published_at=issue.published_at.isoformat(),
        pending_deliveries=pending,
    )


@router.get(
    "/queue",
    response_model=QueueResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Delivery queue status",
)
def queue_status(
    issue_id: UUID | None = Query(None, description="Only count this issue"),
    caller_id: str = Depends(get_caller_id),
    db: DatabasePort = Depends(get_database),
) -> QueueResponse:
    with db.begin() as uow:
        return QueueResponse(pending=uow.delivery_queue.count_pending(issue_id))
