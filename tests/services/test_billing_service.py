from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from app.core.errors import ConflictError, NotFoundError, PaymentPending, ValidationError
from app.core.pricing import HIRE_SUCCESS_FEE, JOB_POSTING_FEE, VERIFICATION_FEE, build_pricing
from app.models.billing import PaymentCompletion
from app.models.principal import Principal
from app.repos.ledger import (
    PAYMENT_INTENTS,
    SUBSCRIPTION_USAGE,
    TRANSACTIONS,
    USER_CREDITS,
    USERS,
    VERIFICATION_REQUESTS,
    InMemoryLedger,
    Write,
)
from app.services.attestor import Sha256Attestor
from app.services.billing_service import (
    CREDIT,
    ENTITLEMENT,
    FEE_WAIVED,
    PAYMENT_REQUIRED,
    BillingDecision,
    BillingService,
)
from app.services.credit_wallet import CreditWallet
from app.services.entitlement_gate import EntitlementGate
from app.services.fee_resolver import FeeResolver
from app.services.verification_service import VerificationService

NOW = 1_768_089_600_000  # 2026-01-11T00:00:00Z
CANDIDATE = Principal(user_id="cand-1", roles=frozenset({"user"}))
EMPLOYER = Principal(user_id="emp-1", roles=frozenset({"user"}))


class _RefusingVerification(VerificationService):
    async def submit(self, principal, credential_id, clearance, note=None):
        raise ConflictError("credential changed concurrently, retry", current_state="pending")


@dataclass
class _World:
    ledger: InMemoryLedger
    verification: VerificationService
    billing: BillingService


def _world(verification_cls: type[VerificationService] = VerificationService) -> _World:
    ledger = InMemoryLedger()
    pricing = build_pricing(env={})
    clock = _ticker()
    verification = verification_cls(ledger, Sha256Attestor(), clock=clock)
    billing = BillingService(
        ledger,
        pricing,
        EntitlementGate(ledger, pricing, clock=clock),
        CreditWallet(ledger, clock=clock),
        FeeResolver(ledger, pricing, clock=clock),
        verification,
        clock=clock,
    )
    return _World(ledger, verification, billing)


def _ticker():
    state = {"now": NOW}

    def clock() -> int:
        state["now"] += 1
        return state["now"]

    return clock


def _profile(world: _World, user_id: str, **body) -> None:
    asyncio.run(world.ledger.commit([Write(USERS, user_id, body)]))


def _draft(world: _World) -> str:
    credential = asyncio.run(
        world.verification.create_credential(
            CANDIDATE, type="certificate", title="AWS Solutions Architect", issuer="AWS"
        )
    )
    return credential.id


def _count(world: _World, collection: str) -> int:
    return len(asyncio.run(world.ledger.find(collection)))


def _usage(world: _World, key: str) -> int:
    doc = asyncio.run(world.ledger.get(SUBSCRIPTION_USAGE, key))
    return doc.body["count"] if doc is not None else 0


# ---- request_verification ----


def test_entitlement_covers_verification() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    credential_id = _draft(world)

    request = asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    assert request.status == "pending"
    assert request.clearance["source"] == ENTITLEMENT
    assert _usage(world, "cand-1:verification:2026-01") == 1
    assert _count(world, PAYMENT_INTENTS) == 0


def test_uncovered_verification_emits_payment_obligation() -> None:
    world = _world()
    credential_id = _draft(world)

    with pytest.raises(PaymentPending) as exc_info:
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    obligation = exc_info.value.obligation
    assert obligation.amount == 1500
    assert obligation.action_type == VERIFICATION_FEE
    assert obligation.target_id == credential_id
    assert obligation.status == "pending"
    assert _count(world, VERIFICATION_REQUESTS) == 0


def test_exhausted_entitlement_falls_through_to_payment() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    asyncio.run(
        world.ledger.commit(
            [Write(SUBSCRIPTION_USAGE, "cand-1:verification:2026-01", {"count": 2})]
        )
    )
    credential_id = _draft(world)
    with pytest.raises(PaymentPending):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    assert _usage(world, "cand-1:verification:2026-01") == 2


def test_repeated_request_reuses_outstanding_obligation() -> None:
    world = _world()
    credential_id = _draft(world)
    ids = []
    for _ in range(2):
        with pytest.raises(PaymentPending) as exc_info:
            asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
        ids.append(exc_info.value.obligation.id)
    assert ids[0] == ids[1]
    assert _count(world, PAYMENT_INTENTS) == 1


def test_zero_fee_opens_request_without_payment() -> None:
    world = _world()
    _profile(world, "cand-1", special_role="admin")
    credential_id = _draft(world)

    request = asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    assert request.clearance["source"] == FEE_WAIVED
    assert _count(world, PAYMENT_INTENTS) == 0


def test_doomed_request_costs_nothing() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    credential_id = _draft(world)
    asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    with pytest.raises(ConflictError):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    assert _usage(world, "cand-1:verification:2026-01") == 1


def test_refused_transition_releases_consumed_unit() -> None:
    world = _world(_RefusingVerification)
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    credential_id = _draft(world)

    with pytest.raises(ConflictError):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    assert _usage(world, "cand-1:verification:2026-01") == 0


def test_requester_note_lands_on_submitted_entry() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    credential_id = _draft(world)

    request = asyncio.run(
        world.billing.request_verification(
            CANDIDATE, credential_id, note="  Issuer contact: registrar@uni.edu  "
        )
    )

    assert request.timeline[0].status == "submitted"
    assert request.timeline[0].note == "Issuer contact: registrar@uni.edu"


def test_overlong_note_is_rejected_before_billing() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    credential_id = _draft(world)

    with pytest.raises(ValidationError):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id, note="x" * 2001))
    assert _usage(world, "cand-1:verification:2026-01") == 0


def test_decision_without_clearance_is_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    world = _world()
    credential_id = _draft(world)

    async def no_clearance(principal, action_type, target_id, *, note=None):
        return BillingDecision(outcome=FEE_WAIVED, action_type=action_type, target_id=target_id)

    monkeypatch.setattr(world.billing, "authorize", no_clearance)
    with pytest.raises(RuntimeError, match="carries no clearance"):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    assert _count(world, VERIFICATION_REQUESTS) == 0


# ---- prepaid credits ----


def _credits(world: _World, user_id: str, **balances: int) -> None:
    asyncio.run(world.ledger.commit([Write(USER_CREDITS, user_id, balances)]))


def _balance(world: _World, user_id: str, credit_type: str) -> int:
    doc = asyncio.run(world.ledger.get(USER_CREDITS, user_id))
    return doc.body.get(credit_type, 0) if doc is not None else 0


def test_credit_pays_for_verification_without_subscription() -> None:
    world = _world()
    _credits(world, "cand-1", verification_credits=1)
    credential_id = _draft(world)

    request = asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    assert request.clearance["source"] == CREDIT
    assert request.clearance["reference"] == "cand-1:verification_credits"
    assert _balance(world, "cand-1", "verification_credits") == 0
    assert _count(world, PAYMENT_INTENTS) == 0


def test_entitlement_is_used_before_credits() -> None:
    world = _world()
    _profile(world, "cand-1", subscription={"plan": "candidate_free", "status": "active"})
    _credits(world, "cand-1", verification_credits=1)
    credential_id = _draft(world)

    request = asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))

    assert request.clearance["source"] == ENTITLEMENT
    assert _balance(world, "cand-1", "verification_credits") == 1


def test_credits_are_used_before_a_zero_fee() -> None:
    world = _world()
    _profile(world, "emp-1", special_role="admin")
    _credits(world, "emp-1", posting_credits=1)

    decision = asyncio.run(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, "job-1"))

    assert decision.outcome == CREDIT
    assert decision.credit is not None and decision.credit.remaining == 0


def test_empty_wallet_falls_through_to_payment() -> None:
    world = _world()
    _credits(world, "emp-1", posting_credits=0, verification_credits=3)

    decision = asyncio.run(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, "job-1"))

    assert decision.outcome == PAYMENT_REQUIRED
    assert decision.credit is not None and decision.credit.spent is False
    assert _balance(world, "emp-1", "verification_credits") == 3


def test_no_credit_type_pays_for_hire_success() -> None:
    world = _world()
    _credits(world, "emp-1", posting_credits=5, verification_credits=5)
    decision = asyncio.run(world.billing.authorize(EMPLOYER, HIRE_SUCCESS_FEE, "hire-1"))
    assert decision.outcome == PAYMENT_REQUIRED
    assert _balance(world, "emp-1", "posting_credits") == 5


def test_refused_transition_refunds_spent_credit() -> None:
    world = _world(_RefusingVerification)
    _credits(world, "cand-1", verification_credits=1)
    credential_id = _draft(world)

    with pytest.raises(ConflictError):
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    assert _balance(world, "cand-1", "verification_credits") == 1


def test_callers_racing_for_the_last_credit_spend_it_once() -> None:
    world = _world()
    _credits(world, "emp-1", posting_credits=1)

    async def race() -> list[str]:
        decisions = await asyncio.gather(
            *(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, f"job-{i}") for i in range(10))
        )
        return [d.outcome for d in decisions]

    outcomes = asyncio.run(race())

    assert outcomes.count(CREDIT) == 1
    assert outcomes.count(PAYMENT_REQUIRED) == 9
    assert _balance(world, "emp-1", "posting_credits") == 0


# ---- authorize (other actions) ----


def test_job_posting_within_plan_then_paid() -> None:
    world = _world()
    _profile(world, "emp-1", subscription={"plan": "employer_basic", "status": "active"})
    asyncio.run(
        world.ledger.commit(
            [Write(SUBSCRIPTION_USAGE, "emp-1:job_posting:2026-01", {"count": 4})]
        )
    )

    first = asyncio.run(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, "job-1"))
    assert first.outcome == ENTITLEMENT
    assert first.clearance is not None

    second = asyncio.run(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, "job-2"))
    assert second.outcome == PAYMENT_REQUIRED
    assert second.entitlement is not None and second.entitlement.exhausted
    assert second.obligation is not None and second.obligation.amount == 5000


def test_action_without_feature_goes_straight_to_fee() -> None:
    world = _world()
    decision = asyncio.run(world.billing.authorize(EMPLOYER, HIRE_SUCCESS_FEE, "hire-1"))
    assert decision.outcome == PAYMENT_REQUIRED
    assert decision.entitlement is None
    assert decision.obligation is not None and decision.obligation.amount == 10000


def test_authorize_validates_input() -> None:
    world = _world()
    with pytest.raises(ValidationError):
        asyncio.run(world.billing.authorize(EMPLOYER, "teleport_fee", "x"))
    with pytest.raises(ValidationError):
        asyncio.run(world.billing.authorize(EMPLOYER, JOB_POSTING_FEE, "  "))


# ---- payment completions ----


def _pending_payment(world: _World) -> tuple[str, str]:
    credential_id = _draft(world)
    with pytest.raises(PaymentPending) as exc_info:
        asyncio.run(world.billing.request_verification(CANDIDATE, credential_id))
    return exc_info.value.obligation.id, credential_id


def _completion(payment_id: str, credential_id: str, status: str = "completed") -> PaymentCompletion:
    return PaymentCompletion(payment_id, VERIFICATION_FEE, credential_id, status)


def test_completion_opens_request_and_credits_ledger() -> None:
    world = _world()
    payment_id, credential_id = _pending_payment(world)

    outcome = asyncio.run(world.billing.handle_payment_completion(_completion(payment_id, credential_id)))

    assert outcome.result == "applied"
    assert outcome.verification_request_id is not None
    request_doc = asyncio.run(world.ledger.get(VERIFICATION_REQUESTS, outcome.verification_request_id))
    assert request_doc is not None
    assert request_doc.body["clearance"]["source"] == "payment"
    assert request_doc.body["clearance"]["reference"] == payment_id

    credit = asyncio.run(world.ledger.get(TRANSACTIONS, payment_id))
    assert credit is not None and credit.body["amount"] == 1500
    assert asyncio.run(world.ledger.get(PAYMENT_INTENTS, payment_id)).body["status"] == "completed"  # type: ignore[union-attr]


def test_paid_request_keeps_requester_note() -> None:
    world = _world()
    credential_id = _draft(world)
    with pytest.raises(PaymentPending) as exc_info:
        asyncio.run(
            world.billing.request_verification(CANDIDATE, credential_id, note="Urgent, offer pending")
        )
    payment_id = exc_info.value.obligation.id

    outcome = asyncio.run(world.billing.handle_payment_completion(_completion(payment_id, credential_id)))

    request_doc = asyncio.run(world.ledger.get(VERIFICATION_REQUESTS, outcome.verification_request_id))
    assert request_doc is not None
    assert request_doc.body["timeline"][0]["note"] == "Urgent, offer pending"


def test_duplicate_completion_applies_once() -> None:
    world = _world()
    payment_id, credential_id = _pending_payment(world)
    event = _completion(payment_id, credential_id)

    first = asyncio.run(world.billing.handle_payment_completion(event))
    second = asyncio.run(world.billing.handle_payment_completion(event))

    assert first.result == "applied"
    assert second.result == "duplicate"
    assert _count(world, VERIFICATION_REQUESTS) == 1
    assert _count(world, TRANSACTIONS) == 1


def test_failed_then_completed_payment() -> None:
    world = _world()
    payment_id, credential_id = _pending_payment(world)

    failed = asyncio.run(
        world.billing.handle_payment_completion(_completion(payment_id, credential_id, "failed"))
    )
    assert failed.result == "failed"
    assert _count(world, VERIFICATION_REQUESTS) == 0

    repeat = asyncio.run(
        world.billing.handle_payment_completion(_completion(payment_id, credential_id, "canceled"))
    )
    assert repeat.result == "duplicate"

    applied = asyncio.run(world.billing.handle_payment_completion(_completion(payment_id, credential_id)))
    assert applied.result == "applied"


def test_completion_for_deleted_credential_requires_refund() -> None:
    world = _world()
    payment_id, credential_id = _pending_payment(world)
    asyncio.run(world.verification.delete_credential(CANDIDATE, credential_id))

    outcome = asyncio.run(world.billing.handle_payment_completion(_completion(payment_id, credential_id)))

    assert outcome.result == "requires_refund"
    assert outcome.verification_request_id is None
    assert asyncio.run(world.ledger.get(PAYMENT_INTENTS, payment_id)).body["status"] == "requires_refund"  # type: ignore[union-attr]
    assert _count(world, TRANSACTIONS) == 1


def test_completion_must_match_obligation() -> None:
    world = _world()
    payment_id, _ = _pending_payment(world)
    with pytest.raises(ValidationError):
        asyncio.run(world.billing.handle_payment_completion(_completion(payment_id, "another-credential")))


def test_unknown_payment_is_not_found() -> None:
    world = _world()
    with pytest.raises(NotFoundError):
        asyncio.run(world.billing.handle_payment_completion(_completion("pay_missing", "c1")))


def test_unknown_completion_status_is_rejected() -> None:
    world = _world()
    payment_id, credential_id = _pending_payment(world)
    with pytest.raises(ValidationError):
        asyncio.run(
            world.billing.handle_payment_completion(_completion(payment_id, credential_id, "refunded"))
        )
