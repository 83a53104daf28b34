"""Credential endpoints (owner side).

- POST   /v1/credentials                     — create a draft credential
- GET    /v1/credentials/{id}                — read (owner or reviewer)
- PATCH  /v1/credentials/{id}                — edit content while draft
- DELETE /v1/credentials/{id}                — delete / archive
- POST   /v1/credentials/{id}/verification   — request verification (optional note)
- GET    /v1/credentials/{id}/verification   — status + timeline

Requesting verification is a billable action.  The response tells the
client which way it was paid for:

  201 Created            entitlement or credit used, or fee waived; the request
                         is open and the body is the new request
  402 Payment Required   the body carries a payment obligation; the
                         request opens when the payment collaborator
                         reports completion to /v1/payments/completions
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentPrincipal
from app.api.ratelimit import require_billable_rate_limit
from app.api.verification import VerificationRequestOut, request_out
from app.models.credential import Credential
from app.services.billing_service import billing_service
from app.services.verification_service import verification_service

router = APIRouter(prefix="/v1/credentials", tags=["credentials"])

CredentialType = Literal["education", "work", "certificate", "skill"]


class CredentialIn(BaseModel):
    type: CredentialType
    title: str = Field(min_length=1, max_length=200)
    issuer: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)


class CredentialPatch(BaseModel):
    type: CredentialType | None = None
    title: str | None = Field(default=None, min_length=1, max_length=200)
    issuer: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)


class CredentialOut(BaseModel):
    id: str
    owner_id: str
    type: str
    title: str
    issuer: str
    description: str
    verification_status: str
    verification_request_id: str | None
    attestation_hash: str | None
    attestation_id: str | None
    attested_at: int | None
    rejected_at: int | None
    rejection_reason: str | None
    created_at: int
    updated_at: int


class VerificationRequestIn(BaseModel):
    # Shown to the reviewer on the "submitted" timeline entry.
    note: str | None = Field(default=None, max_length=2000)


class CredentialDeletedOut(BaseModel):
    id: str
    result: str  # deleted|archived


class VerificationStatusOut(BaseModel):
    credential_id: str
    verification_status: str
    request: VerificationRequestOut | None


def credential_out(credential: Credential) -> CredentialOut:
    return CredentialOut(
        id=credential.id,
        owner_id=credential.owner_id,
        type=credential.type,
        title=credential.title,
        issuer=credential.issuer,
        description=credential.description,
        verification_status=credential.verification_status,
        verification_request_id=credential.verification_request_id,
        attestation_hash=credential.attestation_hash,
        attestation_id=credential.attestation_id,
        attested_at=credential.attested_at,
        rejected_at=credential.rejected_at,
        rejection_reason=credential.rejection_reason,
        created_at=credential.created_at,
        updated_at=credential.updated_at,
    )


@router.post("", response_model=CredentialOut, status_code=status.HTTP_201_CREATED)
async def create_credential(
    body: CredentialIn,
    principal: CurrentPrincipal,
) -> CredentialOut:
    credential = await verification_service.create_credential(
        principal,
        type=body.type,
        title=body.title,
        issuer=body.issuer,
        description=body.description,
    )
    return credential_out(credential)


@router.get("/{credential_id}", response_model=CredentialOut)
async def get_credential(
    credential_id: str,
    principal: CurrentPrincipal,
) -> CredentialOut:
    return credential_out(await verification_service.get_credential(principal, credential_id))


@router.patch("/{credential_id}", response_model=CredentialOut)
async def edit_credential(
    credential_id: str,
    body: CredentialPatch,
    principal: CurrentPrincipal,
) -> CredentialOut:
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    credential = await verification_service.edit_credential(principal, credential_id, changes)
    return credential_out(credential)


@router.delete("/{credential_id}", response_model=CredentialDeletedOut)
async def delete_credential(
    credential_id: str,
    principal: CurrentPrincipal,
) -> CredentialDeletedOut:
    result = await verification_service.delete_credential(principal, credential_id)
    return CredentialDeletedOut(id=credential_id, result=result)


@router.post(
    "/{credential_id}/verification",
    response_model=VerificationRequestOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_billable_rate_limit)],
)
async def request_verification(
    credential_id: str,
    principal: CurrentPrincipal,
    body: VerificationRequestIn | None = None,
) -> VerificationRequestOut:
    request = await billing_service.request_verification(
        principal, credential_id, body.note if body is not None else None
    )
    return request_out(request)


@router.get("/{credential_id}/verification", response_model=VerificationStatusOut)
async def get_verification_status(
    credential_id: str,
    principal: CurrentPrincipal,
) -> VerificationStatusOut:
    credential, request = await verification_service.status(principal, credential_id)
    return VerificationStatusOut(
        credential_id=credential.id,
        verification_status=credential.verification_status,
        request=request_out(request) if request is not None else None,
    )
