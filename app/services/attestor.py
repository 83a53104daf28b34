"""Attestation stamping for verified credentials.

An attestation is the immutable proof recorded when a credential
becomes ``verified``: a hash, an identifier and a timestamp.  Minting
it on a blockchain (or anywhere else) is somebody else's job; the
state machine only needs an object satisfying ``Attestor``.

Sha256Attestor is the default.  It is deterministic: the same
credential content verified by the same request at the same instant
always yields the same hash, so a retried stamp is recognisable.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.models.credential import Credential
from app.models.verification import VerificationRequest


@dataclass(frozen=True, slots=True)
class Attestation:
    hash: str
    attestation_id: str
    attested_at: int


@runtime_checkable
class Attestor(Protocol):
    async def attest(
        self, credential: Credential, request: VerificationRequest, at: int
    ) -> Attestation: ...


class Sha256Attestor:
    """Content-addressed attestation: sha256 over the verified claim."""

    async def attest(
        self, credential: Credential, request: VerificationRequest, at: int
    ) -> Attestation:
        claim = {
            "credential_id": credential.id,
            "owner_id": credential.owner_id,
            "type": credential.type,
            "title": credential.title,
            "issuer": credential.issuer,
            "description": credential.description,
            "verification_request_id": request.id,
            "verified_at": at,
        }
        digest = hashlib.sha256(
            json.dumps(claim, sort_keys=True, separators=(",", ":")).encode()
        ).hexdigest()
        return Attestation(
            hash=f"0x{digest}",
            attestation_id=f"att_{digest[:24]}",
            attested_at=at,
        )
