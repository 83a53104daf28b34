"""Billing orchestration: decide how a billable action is paid for.

    authorize(action) ──▶ EntitlementGate.try_consume
                            granted ─────────────────▶ clearance "entitlement"
                            not covered / exhausted
                              ▼
                          CreditWallet.try_spend
                            spent ───────────────────▶ clearance "credit"
                            no credit
                              ▼
                          FeeResolver.resolve_fee
                            amount == 0 ─────────────▶ clearance "fee_waived"
                            amount  > 0 ─────────────▶ PaymentObligation
                                                       (caller gets 402)

    payment collaborator ──▶ handle_payment_completion
                               one commit: obligation → completed,
                                           ledger credit,
                                           draft → pending (verification_fee)

IDEMPOTENT COMPLETIONS
-----------------------
The payment collaborator delivers completions at-least-once.  The
obligation document (keyed by payment id) records whether a completion
was already applied, and the ledger credit is created with
``expected_version=None`` ("must not exist"), so two concurrent
deliveries cannot both commit: the loser re-reads, sees ``completed``
and returns ``duplicate``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.clock import Clock, now_ms
from app.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentPending,
    PermissionDeniedError,
    ValidationError,
    WriteConflict,
)
from app.core.metrics import PAYMENT_COMPLETIONS, PAYMENT_OBLIGATIONS
from app.core.pricing import PRICING, VERIFICATION_FEE, PricingConfig
from app.db.ledger import ledger
from app.models.billing import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REQUIRES_REFUND,
    SETTLED_PAYMENT_STATUSES,
    CreditDecision,
    EntitlementDecision,
    FeeQuote,
    PaymentCompletion,
    PaymentObligation,
    PaymentOutcome,
)
from app.models.principal import Principal
from app.models.verification import Clearance, VerificationRequest
from app.repos.ledger import PAYMENT_INTENTS, TRANSACTIONS, LedgerStore, Write
from app.services.credit_wallet import CreditWallet, credit_wallet
from app.services.entitlement_gate import EntitlementGate, entitlement_gate
from app.services.fee_resolver import FeeResolver, fee_resolver
from app.services.verification_service import (
    VerificationService,
    clean_note,
    verification_service,
)

logger = logging.getLogger(__name__)

ENTITLEMENT = "entitlement"
CREDIT = "credit"
FEE_WAIVED = "fee_waived"
PAYMENT_REQUIRED = "payment_required"

COMPLETION_STATUSES = frozenset({"completed", "failed", "canceled"})
_MAX_COMPLETION_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class BillingDecision:
    outcome: str  # entitlement | credit | fee_waived | payment_required
    action_type: str
    target_id: str
    entitlement: EntitlementDecision | None = None
    credit: CreditDecision | None = None
    quote: FeeQuote | None = None
    obligation: PaymentObligation | None = None
    clearance: Clearance | None = None


class BillingService:
    def __init__(
        self,
        ledger: LedgerStore,
        pricing: PricingConfig,
        gate: EntitlementGate,
        credits: CreditWallet,
        resolver: FeeResolver,
        verification: VerificationService,
        clock: Clock = now_ms,
    ) -> None:
        self._ledger = ledger
        self._pricing = pricing
        self._gate = gate
        self._credits = credits
        self._resolver = resolver
        self._verification = verification
        self._clock = clock

    async def authorize(
        self,
        principal: Principal,
        action_type: str,
        target_id: str,
        *,
        note: str | None = None,
    ) -> BillingDecision:
        """Settle the billable side of an action, or emit an obligation.

        ``note`` rides on a new payment obligation so the paid request
        can carry it once the payment completes.
        """
        self._resolver.require_action_type(action_type)
        target_id = (target_id or "").strip()
        if not target_id:
            raise ValidationError("target_id is required")
        user_id = principal.user_id

        entitlement: EntitlementDecision | None = None
        feature = self._pricing.feature_for(action_type)
        if feature is not None:
            entitlement = await self._gate.try_consume(user_id, feature)
            if entitlement.granted:
                return BillingDecision(
                    outcome=ENTITLEMENT,
                    action_type=action_type,
                    target_id=target_id,
                    entitlement=entitlement,
                    clearance=Clearance(
                        action_type=action_type,
                        target_id=target_id,
                        source=ENTITLEMENT,
                        reference=entitlement.counter_key or feature,
                    ),
                )

        credit = await self._credits.try_spend(user_id, action_type)
        if credit.spent:
            return BillingDecision(
                outcome=CREDIT,
                action_type=action_type,
                target_id=target_id,
                entitlement=entitlement,
                credit=credit,
                clearance=Clearance(
                    action_type=action_type,
                    target_id=target_id,
                    source=CREDIT,
                    reference=credit.reference,
                ),
            )

        quote = await self._resolver.resolve_fee(user_id, action_type)
        if quote.amount == 0:
            logger.info(
                "Fee waived user=%s action_type=%s adjustment=%s",
                user_id,
                action_type,
                quote.adjustment,
                extra={"user_id": user_id, "action_type": action_type},
            )
            return BillingDecision(
                outcome=FEE_WAIVED,
                action_type=action_type,
                target_id=target_id,
                entitlement=entitlement,
                credit=credit,
                quote=quote,
                clearance=Clearance(
                    action_type=action_type,
                    target_id=target_id,
                    source=FEE_WAIVED,
                    reference=quote.adjustment,
                ),
            )

        obligation = await self._obligation_for(user_id, quote, target_id, note)
        return BillingDecision(
            outcome=PAYMENT_REQUIRED,
            action_type=action_type,
            target_id=target_id,
            entitlement=entitlement,
            credit=credit,
            quote=quote,
            obligation=obligation,
        )

    async def request_verification(
        self, principal: Principal, credential_id: str, note: str | None = None
    ) -> VerificationRequest:
        """Owner asks for verification: bill it, then open the request.

        Raises PaymentPending (with the obligation) when the user has to
        pay first; the request is opened later by the completion event.
        An entitlement unit or credit taken for a request that then fails
        to open is given back.
        """
        note = clean_note(note, "note")
        await self._verification.precheck_submission(principal, credential_id)

        decision = await self.authorize(
            principal, VERIFICATION_FEE, credential_id, note=note
        )
        if decision.obligation is not None:
            raise PaymentPending(decision.obligation)
        if decision.clearance is None:
            raise RuntimeError(f"billing outcome {decision.outcome!r} carries no clearance")

        try:
            return await self._verification.submit(
                principal, credential_id, decision.clearance, note=note
            )
        except Exception:
            if decision.entitlement is not None and decision.outcome == ENTITLEMENT:
                await self._release_quietly(decision.entitlement)
            elif decision.credit is not None and decision.outcome == CREDIT:
                await self._refund_quietly(decision.credit)
            raise

    async def handle_payment_completion(self, event: PaymentCompletion) -> PaymentOutcome:
        _validate_completion(event)

        for _ in range(_MAX_COMPLETION_ATTEMPTS):
            doc = await self._ledger.get(PAYMENT_INTENTS, event.payment_id)
            if doc is None:
                raise NotFoundError(f"unknown payment {event.payment_id!r}")
            obligation = PaymentObligation.from_body(doc.body)

            if obligation.action_type != event.action_type or (
                obligation.target_id != event.target_id
            ):
                logger.warning(
                    "Payment completion does not match obligation payment=%s",
                    event.payment_id,
                    extra={"payment_id": event.payment_id},
                )
                raise ValidationError("completion does not match the payment obligation")

            if obligation.status in SETTLED_PAYMENT_STATUSES or (
                obligation.status == PAYMENT_FAILED and event.status != PAYMENT_COMPLETED
            ):
                return self._outcome(event, "duplicate")

            try:
                if event.status != PAYMENT_COMPLETED:
                    failed = _with_status(obligation, PAYMENT_FAILED, None)
                    await self._ledger.commit(
                        [Write(PAYMENT_INTENTS, obligation.id, failed.to_body(), doc.version)]
                    )
                    return self._outcome(event, "failed")
                return await self._apply_completion(obligation, doc.version, event)
            except WriteConflict:
                logger.info(
                    "Payment %s changed concurrently, re-reading",
                    event.payment_id,
                    extra={"payment_id": event.payment_id},
                )
                continue

        raise ConflictError(
            "payment completion could not be applied, retry later",
            current_state=PAYMENT_PENDING,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_completion(
        self, obligation: PaymentObligation, version: int, event: PaymentCompletion
    ) -> PaymentOutcome:
        at = self._clock()
        writes: list[Write] = []
        request: VerificationRequest | None = None
        status = PAYMENT_COMPLETED

        if obligation.action_type == VERIFICATION_FEE:
            owner = Principal(user_id=obligation.user_id, roles=frozenset())
            clearance = Clearance(
                action_type=VERIFICATION_FEE,
                target_id=obligation.target_id,
                source="payment",
                reference=obligation.id,
            )
            try:
                cred_doc, credential = await self._verification.precheck_submission(
                    owner, obligation.target_id
                )
            except (ConflictError, NotFoundError, PermissionDeniedError) as exc:
                logger.warning(
                    "Paid verification can no longer be opened payment=%s: %s",
                    obligation.id,
                    exc.message,
                    extra={"payment_id": obligation.id, "credential_id": obligation.target_id},
                )
                status = PAYMENT_REQUIRES_REFUND
            else:
                request, writes = self._verification.submission_writes(
                    cred_doc, credential, clearance, at, obligation.note
                )

        settled = _with_status(obligation, status, at)
        credit = {
            "payment_id": obligation.id,
            "user_id": obligation.user_id,
            "amount": obligation.amount,
            "currency": obligation.currency,
            "action_type": obligation.action_type,
            "target_id": obligation.target_id,
            "entry": "credit",
            "created_at": at,
        }
        writes = [
            Write(PAYMENT_INTENTS, obligation.id, settled.to_body(), version),
            Write(TRANSACTIONS, obligation.id, credit, expected_version=None),
            *writes,
        ]
        await self._ledger.commit(writes)

        if request is not None:
            self._verification.record_submission(request, clearance)
        result = "applied" if status == PAYMENT_COMPLETED else "requires_refund"
        return self._outcome(event, result, request.id if request is not None else None)

    async def _obligation_for(
        self, user_id: str, quote: FeeQuote, target_id: str, note: str | None = None
    ) -> PaymentObligation:
        """Reuse an outstanding obligation for the same action, or emit one."""
        existing = await self._ledger.find(
            PAYMENT_INTENTS,
            {
                "user_id": user_id,
                "action_type": quote.action_type,
                "target_id": target_id,
                "status": PAYMENT_PENDING,
                "amount": quote.amount,
            },
        )
        if existing:
            return PaymentObligation.from_body(existing[0].body)

        obligation = PaymentObligation.new(
            user_id=user_id,
            quote=quote,
            target_id=target_id,
            at=self._clock(),
            note=note,
        )
        await self._ledger.commit(
            [Write(PAYMENT_INTENTS, obligation.id, obligation.to_body(), expected_version=None)]
        )
        PAYMENT_OBLIGATIONS.labels(action_type=quote.action_type).inc()
        logger.info(
            "Payment obligation emitted payment=%s user=%s action_type=%s amount=%d %s",
            obligation.id,
            user_id,
            quote.action_type,
            obligation.amount,
            obligation.currency,
            extra={
                "payment_id": obligation.id,
                "user_id": user_id,
                "action_type": quote.action_type,
            },
        )
        return obligation

    async def _release_quietly(self, decision: EntitlementDecision) -> None:
        try:
            await self._gate.release(decision)
        except Exception:
            logger.exception("Could not release entitlement counter=%s", decision.counter_key)

    async def _refund_quietly(self, decision: CreditDecision) -> None:
        try:
            await self._credits.refund(decision)
        except Exception:
            logger.exception(
                "Could not refund credit user=%s credit=%s",
                decision.user_id,
                decision.credit_type,
            )

    @staticmethod
    def _outcome(
        event: PaymentCompletion, result: str, request_id: str | None = None
    ) -> PaymentOutcome:
        PAYMENT_COMPLETIONS.labels(result=result).inc()
        logger.info(
            "Payment completion payment=%s result=%s",
            event.payment_id,
            result,
            extra={"payment_id": event.payment_id, "action_type": event.action_type},
        )
        return PaymentOutcome(
            payment_id=event.payment_id,
            result=result,
            verification_request_id=request_id,
        )


def _validate_completion(event: PaymentCompletion) -> None:
    if not event.payment_id or not event.target_id:
        raise ValidationError("payment_id and target_id are required")
    if event.status not in COMPLETION_STATUSES:
        raise ValidationError(
            f"status must be one of {', '.join(sorted(COMPLETION_STATUSES))}"
        )


def _with_status(
    obligation: PaymentObligation, status: str, completed_at: int | None
) -> PaymentObligation:
    body = obligation.to_body()
    body.update(status=status, completed_at=completed_at)
    return PaymentObligation.from_body(body)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

billing_service = BillingService(
    ledger,
    PRICING,
    entitlement_gate,
    credit_wallet,
    fee_resolver,
    verification_service,
)
