from __future__ import annotations

from dataclasses import dataclass, replace
from uuid import uuid4

from app.models.credential import IN_PROGRESS, PENDING, REJECTED, VERIFIED

SUBMITTED = "submitted"

REQUEST_STATUSES = (PENDING, IN_PROGRESS, VERIFIED, REJECTED)

# Allowed status edges for an existing request.  Terminal states have none.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS, VERIFIED, REJECTED}),
    IN_PROGRESS: frozenset({IN_PROGRESS, VERIFIED, REJECTED}),
    VERIFIED: frozenset(),
    REJECTED: frozenset(),
}


def project_status(timeline_status: str) -> str:
    """Map a timeline entry status onto a request status.

    The opening entry is recorded as ``submitted``; everything after it
    uses the request status names directly.
    """
    return PENDING if timeline_status == SUBMITTED else timeline_status


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    status: str
    actor_id: str
    at: int
    note: str | None = None

    def to_body(self) -> dict:
        body: dict = {"status": self.status, "actor_id": self.actor_id, "at": self.at}
        if self.note is not None:
            body["note"] = self.note
        return body

    @staticmethod
    def from_body(body: dict) -> TimelineEntry:
        return TimelineEntry(
            status=body["status"],
            actor_id=body["actor_id"],
            at=int(body["at"]),
            note=body.get("note"),
        )


@dataclass(frozen=True, slots=True)
class Clearance:
    """Proof that the billable side of a transition is settled.

    source:    entitlement | credit | fee_waived | payment
    reference: counter key, credit wallet, fee quote adjustment, or
               payment id
    """

    action_type: str
    target_id: str
    source: str
    reference: str

    def to_body(self) -> dict:
        return {
            "action_type": self.action_type,
            "target_id": self.target_id,
            "source": self.source,
            "reference": self.reference,
        }


@dataclass(frozen=True, slots=True)
class VerificationRequest:
    """One verification attempt for one credential.

    Invariants: ``timeline`` is append-only with strictly increasing
    ``at``, and ``project_status(timeline[-1].status) == status``.
    """

    id: str
    credential_id: str
    requester_id: str
    status: str
    timeline: tuple[TimelineEntry, ...]
    clearance: dict
    created_at: int
    updated_at: int
    reviewer_id: str | None = None
    admin_notes: str | None = None
    public_notes: str | None = None

    @staticmethod
    def open(
        *,
        credential_id: str,
        requester_id: str,
        clearance: Clearance,
        at: int,
        note: str | None = None,
    ) -> VerificationRequest:
        return VerificationRequest(
            id=uuid4().hex,
            credential_id=credential_id,
            requester_id=requester_id,
            status=PENDING,
            timeline=(
                TimelineEntry(
                    status=SUBMITTED,
                    actor_id=requester_id,
                    at=at,
                    note=note or "Verification request submitted",
                ),
            ),
            clearance=clearance.to_body(),
            created_at=at,
            updated_at=at,
        )

    @property
    def is_open(self) -> bool:
        return self.status in (PENDING, IN_PROGRESS)

    @property
    def last_entry(self) -> TimelineEntry:
        return self.timeline[-1]

    def next_timestamp(self, now: int) -> int:
        """A timestamp strictly after the last timeline entry."""
        return max(now, self.last_entry.at + 1)

    def append(
        self,
        *,
        status: str,
        actor_id: str,
        at: int,
        note: str | None = None,
        public_note: str | None = None,
    ) -> VerificationRequest:
        entry = TimelineEntry(status=status, actor_id=actor_id, at=at, note=note)
        return replace(
            self,
            status=status,
            timeline=(*self.timeline, entry),
            updated_at=at,
            reviewer_id=actor_id,
            admin_notes=note if note is not None else self.admin_notes,
            public_notes=public_note if public_note is not None else self.public_notes,
        )

    def to_body(self) -> dict:
        return {
            "id": self.id,
            "credential_id": self.credential_id,
            "requester_id": self.requester_id,
            "status": self.status,
            "timeline": [e.to_body() for e in self.timeline],
            "clearance": dict(self.clearance),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "reviewer_id": self.reviewer_id,
            "admin_notes": self.admin_notes,
            "public_notes": self.public_notes,
        }

    @staticmethod
    def from_body(body: dict) -> VerificationRequest:
        return VerificationRequest(
            id=body["id"],
            credential_id=body["credential_id"],
            requester_id=body["requester_id"],
            status=body["status"],
            timeline=tuple(TimelineEntry.from_body(e) for e in body["timeline"]),
            clearance=dict(body.get("clearance") or {}),
            created_at=int(body["created_at"]),
            updated_at=int(body["updated_at"]),
            reviewer_id=body.get("reviewer_id"),
            admin_notes=body.get("admin_notes"),
            public_notes=body.get("public_notes"),
        )
