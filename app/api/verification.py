"""Reviewer surface for verification requests.

- GET  /v1/verification/requests              — reviewer queue (?status=)
- GET  /v1/verification/requests/{id}         — one request with timeline
- POST /v1/verification/requests/{id}/advance — advance(requestId, newStatus, note)

Only principals holding ``admin`` or ``verifier`` get past the route
guard; the service re-checks, so the rule also holds for the worker.
"""

from __future__ import annotations

from typing import Annotated, Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from app.api.dependencies import ReviewerPrincipal
from app.core.errors import NotFoundError
from app.db.ledger import ledger
from app.models.verification import VerificationRequest
from app.repos.ledger import VERIFICATION_REQUESTS
from app.services.verification_service import verification_service

router = APIRouter(prefix="/v1/verification", tags=["verification"])


class TimelineEntryOut(BaseModel):
    status: str
    actor_id: str
    at: int
    note: str | None = None


class VerificationRequestOut(BaseModel):
    id: str
    credential_id: str
    requester_id: str
    status: str
    timeline: list[TimelineEntryOut]
    clearance_source: str | None
    reviewer_id: str | None
    public_notes: str | None
    created_at: int
    updated_at: int


class AdvanceIn(BaseModel):
    status: Literal["pending", "inProgress", "verified", "rejected"]
    note: str | None = Field(default=None, max_length=2000)
    public_note: str | None = Field(default=None, max_length=2000)


def request_out(request: VerificationRequest) -> VerificationRequestOut:
    return VerificationRequestOut(
        id=request.id,
        credential_id=request.credential_id,
        requester_id=request.requester_id,
        status=request.status,
        timeline=[
            TimelineEntryOut(status=e.status, actor_id=e.actor_id, at=e.at, note=e.note)
            for e in request.timeline
        ],
        clearance_source=request.clearance.get("source"),
        reviewer_id=request.reviewer_id,
        public_notes=request.public_notes,
        created_at=request.created_at,
        updated_at=request.updated_at,
    )


@router.get("/requests", response_model=list[VerificationRequestOut])
async def list_verification_requests(
    principal: ReviewerPrincipal,
    status: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[VerificationRequestOut]:
    requests = await verification_service.list_requests(principal, status, limit)
    return [request_out(r) for r in requests]


@router.get("/requests/{request_id}", response_model=VerificationRequestOut)
async def get_verification_request(
    request_id: str,
    principal: ReviewerPrincipal,
) -> VerificationRequestOut:
    doc = await ledger.get(VERIFICATION_REQUESTS, request_id)
    if doc is None:
        raise NotFoundError("verification request not found")
    return request_out(VerificationRequest.from_body(doc.body))


@router.post("/requests/{request_id}/advance", response_model=VerificationRequestOut)
async def advance_verification_request(
    request_id: str,
    body: AdvanceIn,
    principal: ReviewerPrincipal,
) -> VerificationRequestOut:
    request = await verification_service.advance(
        principal,
        request_id,
        body.status,
        note=body.note,
        public_note=body.public_note,
    )
    return request_out(request)
