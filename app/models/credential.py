from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from uuid import uuid4

CREDENTIAL_TYPES = ("education", "work", "certificate", "skill")

DRAFT = "draft"
PENDING = "pending"
IN_PROGRESS = "inProgress"
VERIFIED = "verified"
REJECTED = "rejected"

CREDENTIAL_STATUSES = (DRAFT, PENDING, IN_PROGRESS, VERIFIED, REJECTED)
OPEN_STATUSES = frozenset({PENDING, IN_PROGRESS})
TERMINAL_STATUSES = frozenset({VERIFIED, REJECTED})


@dataclass(frozen=True, slots=True)
class Credential:
    """A claim (education, work, certificate, skill) owned by one user.

    ``verification_status`` is a projection of the latest verification
    request's timeline; the request document is the source of truth.
    Attestation fields are written once, on the transition into
    ``verified``, and never overwritten.
    """

    id: str
    owner_id: str
    type: str
    title: str
    issuer: str
    description: str
    verification_status: str
    created_at: int
    updated_at: int
    verification_request_id: str | None = None
    attestation_hash: str | None = None
    attestation_id: str | None = None
    attested_at: int | None = None
    rejected_at: int | None = None
    rejection_reason: str | None = None
    deleted_at: int | None = None

    @staticmethod
    def new(
        *,
        owner_id: str,
        type: str,
        title: str,
        issuer: str,
        description: str,
        at: int,
    ) -> Credential:
        return Credential(
            id=uuid4().hex,
            owner_id=owner_id,
            type=type,
            title=title,
            issuer=issuer,
            description=description,
            verification_status=DRAFT,
            created_at=at,
            updated_at=at,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_attested(self) -> bool:
        return self.attestation_hash is not None

    def with_changes(self, **changes: object) -> Credential:
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_body(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_body(body: dict) -> Credential:
        names = {f.name for f in fields(Credential)}
        return Credential(**{k: v for k, v in body.items() if k in names})
