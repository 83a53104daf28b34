"""Tests for the verification state machine.

Each test builds its own service over a fresh InMemoryLedger and a
controllable clock, so nothing here touches the app singletons.
"""

from __future__ import annotations

import asyncio

import pytest

from app.core.errors import (
    ConflictError,
    ExternalCollaboratorError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.core.pricing import JOB_POSTING_FEE, VERIFICATION_FEE
from app.models.credential import Credential
from app.models.principal import Principal
from app.models.verification import Clearance, VerificationRequest
from app.repos.ledger import CREDENTIALS, VERIFICATION_REQUESTS, InMemoryLedger, Write
from app.services.attestor import Sha256Attestor
from app.services.verification_service import VerificationService

OWNER = Principal(user_id="cand-1", roles=frozenset({"user"}))
STRANGER = Principal(user_id="cand-2", roles=frozenset({"user"}))
VERIFIER = Principal(user_id="rev-1", roles=frozenset({"verifier"}))
ADMIN = Principal(user_id="adm-1", roles=frozenset({"admin"}))

HOUR = 60 * 60 * 1000


class _Clock:
    """Advances 1ms per reading unless frozen."""

    def __init__(self, start: int = 1_768_089_600_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


class _BrokenAttestor:
    async def attest(self, credential, request, at):
        raise RuntimeError("chain unreachable")


class _RacingLedger(InMemoryLedger):
    """Lets another writer touch one document just before the next commit."""

    def __init__(self) -> None:
        super().__init__()
        self.interloper: tuple[str, str] | None = None

    async def commit(self, writes):
        if self.interloper is not None:
            collection, key = self.interloper
            self.interloper = None
            current = await self.get(collection, key)
            assert current is not None
            await super().commit([Write(collection, key, current.body)])
        return await super().commit(writes)


def _service(ledger=None, attestor=None, clock=None):
    ledger = ledger if ledger is not None else InMemoryLedger()
    service = VerificationService(
        ledger, attestor or Sha256Attestor(), clock=clock or _Clock()
    )
    return service, ledger


def _clearance(credential_id: str, source: str = "entitlement") -> Clearance:
    return Clearance(VERIFICATION_FEE, credential_id, source, "cand-1:verification:2026-01")


def _draft(service: VerificationService) -> Credential:
    return asyncio.run(
        service.create_credential(
            OWNER, type="education", title="BSc Computer Science", issuer="MIT"
        )
    )


def _submitted(service: VerificationService) -> tuple[Credential, VerificationRequest]:
    credential = _draft(service)
    request = asyncio.run(service.submit(OWNER, credential.id, _clearance(credential.id)))
    return credential, request


def _credential(ledger: InMemoryLedger, credential_id: str) -> Credential:
    doc = asyncio.run(ledger.get(CREDENTIALS, credential_id))
    assert doc is not None
    return Credential.from_body(doc.body)


def _request(ledger: InMemoryLedger, request_id: str) -> VerificationRequest:
    doc = asyncio.run(ledger.get(VERIFICATION_REQUESTS, request_id))
    assert doc is not None
    return VerificationRequest.from_body(doc.body)


# ---- credential CRUD ----


def test_create_credential_starts_as_draft() -> None:
    service, ledger = _service()
    credential = _draft(service)
    assert credential.verification_status == "draft"
    assert _credential(ledger, credential.id).title == "BSc Computer Science"


def test_create_rejects_unknown_type_and_blank_title() -> None:
    service, _ = _service()
    with pytest.raises(ValidationError):
        asyncio.run(service.create_credential(OWNER, type="diploma", title="x", issuer="y"))
    with pytest.raises(ValidationError):
        asyncio.run(service.create_credential(OWNER, type="work", title="   ", issuer="y"))


def test_only_owner_or_reviewer_can_read() -> None:
    service, _ = _service()
    credential = _draft(service)
    assert asyncio.run(service.get_credential(VERIFIER, credential.id)).id == credential.id
    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.get_credential(STRANGER, credential.id))


def test_edit_draft_then_frozen_after_submission() -> None:
    service, _ = _service()
    credential = _draft(service)
    edited = asyncio.run(service.edit_credential(OWNER, credential.id, {"issuer": "Stanford"}))
    assert edited.issuer == "Stanford"

    asyncio.run(service.submit(OWNER, credential.id, _clearance(credential.id)))
    with pytest.raises(ConflictError):
        asyncio.run(service.edit_credential(OWNER, credential.id, {"title": "PhD"}))


def test_edit_rejects_non_content_fields() -> None:
    service, _ = _service()
    credential = _draft(service)
    with pytest.raises(ValidationError):
        asyncio.run(
            service.edit_credential(OWNER, credential.id, {"verification_status": "verified"})
        )


def test_delete_draft_removes_it() -> None:
    service, ledger = _service()
    credential = _draft(service)
    assert asyncio.run(service.delete_credential(OWNER, credential.id)) == "deleted"
    assert asyncio.run(ledger.get(CREDENTIALS, credential.id)) is None


def test_delete_with_open_request_conflicts() -> None:
    service, _ = _service()
    credential, _ = _submitted(service)
    with pytest.raises(ConflictError) as exc_info:
        asyncio.run(service.delete_credential(OWNER, credential.id))
    assert exc_info.value.current_state == "pending"


def test_delete_after_verification_archives() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "verified"))

    assert asyncio.run(service.delete_credential(OWNER, credential.id)) == "archived"
    assert _credential(ledger, credential.id).deleted_at is not None
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_credential(OWNER, credential.id))


# ---- submission ----


def test_submit_opens_pending_request() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)

    assert request.status == "pending"
    assert [e.status for e in request.timeline] == ["submitted"]
    assert request.clearance["source"] == "entitlement"

    stored = _credential(ledger, credential.id)
    assert stored.verification_status == "pending"
    assert stored.verification_request_id == request.id


def test_second_submission_conflicts() -> None:
    service, _ = _service()
    credential, _ = _submitted(service)
    with pytest.raises(ConflictError) as exc_info:
        asyncio.run(service.submit(OWNER, credential.id, _clearance(credential.id)))
    assert exc_info.value.current_state == "pending"


def test_submit_requires_owner() -> None:
    service, _ = _service()
    credential = _draft(service)
    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.submit(STRANGER, credential.id, _clearance(credential.id)))


def test_submit_requires_matching_clearance() -> None:
    service, _ = _service()
    credential = _draft(service)
    wrong_target = Clearance(VERIFICATION_FEE, "other", "entitlement", "x")
    wrong_action = Clearance(JOB_POSTING_FEE, credential.id, "entitlement", "x")
    for clearance in (wrong_target, wrong_action):
        with pytest.raises(ValidationError):
            asyncio.run(service.submit(OWNER, credential.id, clearance))


def test_rejected_credential_cannot_be_resubmitted() -> None:
    service, _ = _service()
    credential, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "rejected", note="blurry scan"))
    with pytest.raises(ConflictError):
        asyncio.run(service.submit(OWNER, credential.id, _clearance(credential.id)))


# ---- reviewer transitions ----


def test_reject_with_note_appends_one_entry() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)

    rejected = asyncio.run(
        service.advance(ADMIN, request.id, "rejected", note="insufficient evidence")
    )

    assert len(rejected.timeline) == len(request.timeline) + 1
    last = rejected.timeline[-1]
    assert (last.status, last.actor_id, last.note) == ("rejected", "adm-1", "insufficient evidence")

    stored = _credential(ledger, credential.id)
    assert stored.verification_status == "rejected"
    assert stored.rejection_reason == "insufficient evidence"
    assert stored.rejected_at == last.at


def test_reject_requires_note() -> None:
    service, ledger = _service()
    _, request = _submitted(service)
    with pytest.raises(ValidationError):
        asyncio.run(service.advance(VERIFIER, request.id, "rejected", note="  "))
    assert _request(ledger, request.id).status == "pending"


def test_verify_stamps_attestation() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "inProgress"))
    verified = asyncio.run(service.advance(VERIFIER, request.id, "verified"))

    assert [e.status for e in verified.timeline] == ["submitted", "inProgress", "verified"]
    stored = _credential(ledger, credential.id)
    assert stored.verification_status == "verified"
    assert stored.attestation_hash is not None and stored.attestation_hash.startswith("0x")
    assert stored.attestation_id is not None and stored.attestation_id.startswith("att_")
    assert stored.attested_at == verified.timeline[-1].at


def test_in_progress_can_be_reclaimed() -> None:
    service, _ = _service()
    _, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "inProgress"))
    reclaimed = asyncio.run(service.advance(ADMIN, request.id, "inProgress"))
    assert reclaimed.reviewer_id == "adm-1"


@pytest.mark.parametrize("terminal", ["verified", "rejected"])
@pytest.mark.parametrize("target", ["pending", "inProgress", "verified", "rejected"])
def test_terminal_requests_refuse_every_edge(terminal: str, target: str) -> None:
    service, ledger = _service()
    credential, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, terminal, note="document checked"))
    before_request = _request(ledger, request.id)
    before_credential = _credential(ledger, credential.id)

    with pytest.raises(ConflictError) as exc_info:
        asyncio.run(service.advance(ADMIN, request.id, target, note="changed my mind"))

    assert exc_info.value.current_state == terminal
    assert _request(ledger, request.id) == before_request
    assert _credential(ledger, credential.id) == before_credential


def test_pending_to_pending_is_not_an_edge() -> None:
    service, _ = _service()
    _, request = _submitted(service)
    with pytest.raises(ConflictError):
        asyncio.run(service.advance(VERIFIER, request.id, "pending"))


def test_unknown_status_is_validation_error() -> None:
    service, _ = _service()
    _, request = _submitted(service)
    with pytest.raises(ValidationError):
        asyncio.run(service.advance(VERIFIER, request.id, "approved"))


def test_owner_cannot_advance_own_request() -> None:
    service, _ = _service()
    _, request = _submitted(service)
    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.advance(OWNER, request.id, "verified"))


def test_unknown_request_is_not_found() -> None:
    service, _ = _service()
    with pytest.raises(NotFoundError):
        asyncio.run(service.advance(VERIFIER, "missing", "verified"))


def test_attestor_failure_leaves_state_untouched() -> None:
    service, ledger = _service(attestor=_BrokenAttestor())
    credential, request = _submitted(service)

    with pytest.raises(ExternalCollaboratorError):
        asyncio.run(service.advance(VERIFIER, request.id, "verified"))

    assert _request(ledger, request.id).timeline == request.timeline
    stored = _credential(ledger, credential.id)
    assert stored.verification_status == "pending"
    assert stored.attestation_hash is None


def test_timeline_stays_strictly_increasing_with_frozen_clock() -> None:
    service, _ = _service(clock=_Clock(step=0))
    _, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "inProgress"))
    final = asyncio.run(service.advance(VERIFIER, request.id, "verified"))
    stamps = [e.at for e in final.timeline]
    assert stamps == sorted(set(stamps))


def test_concurrent_write_becomes_conflict() -> None:
    ledger = _RacingLedger()
    service, _ = _service(ledger=ledger)
    credential, request = _submitted(service)

    ledger.interloper = (CREDENTIALS, credential.id)
    with pytest.raises(ConflictError):
        asyncio.run(service.advance(VERIFIER, request.id, "inProgress"))
    assert _request(ledger, request.id).status == "pending"


# ---- reads ----


def test_status_returns_current_request() -> None:
    service, _ = _service()
    credential = _draft(service)
    assert asyncio.run(service.status(OWNER, credential.id))[1] is None

    asyncio.run(service.submit(OWNER, credential.id, _clearance(credential.id)))
    current, request = asyncio.run(service.status(OWNER, credential.id))
    assert current.verification_status == "pending"
    assert request is not None and request.credential_id == credential.id


def test_list_requests_filters_by_status() -> None:
    service, _ = _service()
    _, first = _submitted(service)
    _, second = _submitted(service)
    asyncio.run(service.advance(VERIFIER, second.id, "inProgress"))

    pending = asyncio.run(service.list_requests(VERIFIER, "pending"))
    assert [r.id for r in pending] == [first.id]
    assert len(asyncio.run(service.list_requests(VERIFIER))) == 2
    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.list_requests(OWNER))


def test_stale_requests_are_reported_not_changed() -> None:
    clock = _Clock()
    service, ledger = _service(clock=clock)
    _, old = _submitted(service)
    clock.now += 80 * HOUR
    _, fresh = _submitted(service)

    stale = asyncio.run(service.stale_requests(72 * HOUR))
    assert [r.id for r in stale] == [old.id]
    assert _request(ledger, old.id).status == "pending"
    assert fresh.id not in [r.id for r in stale]


# ---- reconciliation ----


def test_reconcile_repairs_drifted_projection() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "verified"))

    drifted = _credential(ledger, credential.id).with_changes(
        verification_status="pending", attestation_hash=None, attestation_id=None
    )
    asyncio.run(ledger.commit([Write(CREDENTIALS, credential.id, drifted.to_body())]))

    assert asyncio.run(service.reconcile(request.id)) is True
    repaired = _credential(ledger, credential.id)
    assert repaired.verification_status == "verified"
    assert repaired.attestation_hash is not None
    assert asyncio.run(service.reconcile(request.id)) is False


def test_reconcile_all_resets_orphaned_credentials() -> None:
    service, ledger = _service()
    credential, request = _submitted(service)
    asyncio.run(ledger.commit([Write(VERIFICATION_REQUESTS, request.id, None)]))

    assert asyncio.run(service.reconcile_all()) == 1
    orphan = _credential(ledger, credential.id)
    assert orphan.verification_status == "draft"
    assert orphan.verification_request_id is None


def test_reconcile_all_on_consistent_ledger_repairs_nothing() -> None:
    service, _ = _service()
    _, request = _submitted(service)
    asyncio.run(service.advance(VERIFIER, request.id, "rejected", note="no match"))
    assert asyncio.run(service.reconcile_all()) == 0
