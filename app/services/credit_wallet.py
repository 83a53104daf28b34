"""Prepaid credits: one credit pays for one action, no subscription needed.

Balances live in ``user_credits/{user_id}``, one field per credit type::

    {"verification_credits": 1, "posting_credits": 0}

Credits are granted by an operator (sign-up bonus, referral, support
goodwill) and spent by BillingService between the entitlement gate and
the fee resolver.

THE DOUBLE-SPEND HAZARD
------------------------
Two requests race for a user's last credit.  Like the entitlement
counter, the check and the decrement are one ledger call,
``increment(..., delta=-1, floor=0)``, which the ledger refuses instead
of letting the balance go negative.  Exactly one caller gets the credit.

Spends that end up unused (the transition was refused after the credit
was taken) are given back with refund().  Awards are a versioned commit
so the balance and its ``credit_history`` entry land together.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from app.core.clock import Clock, now_ms
from app.core.errors import ConflictError, LedgerUnavailable, ValidationError, WriteConflict
from app.core.metrics import CREDIT_DECISIONS
from app.core.pricing import JOB_POSTING_FEE, VERIFICATION_FEE
from app.db.ledger import ledger
from app.models.billing import CreditDecision
from app.repos.ledger import CREDIT_HISTORY, USER_CREDITS, LedgerStore, Write

logger = logging.getLogger(__name__)

VERIFICATION_CREDITS = "verification_credits"
POSTING_CREDITS = "posting_credits"
CREDIT_TYPES = (VERIFICATION_CREDITS, POSTING_CREDITS)

# Which credit (if any) can pay for a billable action.
_ACTION_CREDITS: dict[str, str] = {
    VERIFICATION_FEE: VERIFICATION_CREDITS,
    JOB_POSTING_FEE: POSTING_CREDITS,
}

MAX_AWARD = 1000
_MAX_AWARD_ATTEMPTS = 3


def credit_type_for(action_type: str) -> str | None:
    return _ACTION_CREDITS.get(action_type)


class CreditWallet:
    def __init__(self, ledger: LedgerStore, clock: Clock = now_ms) -> None:
        self._ledger = ledger
        self._clock = clock

    async def try_spend(self, user_id: str, action_type: str) -> CreditDecision:
        """Spend one credit on ``action_type`` if the user has one."""
        credit_type = credit_type_for(action_type)
        if credit_type is None:
            return CreditDecision(user_id, action_type, None, spent=False, remaining=0)

        try:
            # Read first so users without credits never create a wallet row.
            balance = (await self.balances(user_id))[credit_type]
            if balance > 0:
                result = await self._ledger.increment(
                    USER_CREDITS, user_id, credit_type, -1, floor=0
                )
                spent, remaining = result.applied, result.after
            else:
                spent, remaining = False, 0
        except LedgerUnavailable:
            CREDIT_DECISIONS.labels(credit_type=credit_type, result="error").inc()
            logger.error(
                "Credit spend failed closed user=%s credit=%s",
                user_id,
                credit_type,
                extra={"user_id": user_id, "action_type": action_type},
            )
            raise

        CREDIT_DECISIONS.labels(
            credit_type=credit_type, result="spent" if spent else "empty"
        ).inc()
        if spent:
            logger.info(
                "Credit spent user=%s credit=%s remaining=%d",
                user_id,
                credit_type,
                remaining,
                extra={"user_id": user_id, "action_type": action_type},
            )
        return CreditDecision(user_id, action_type, credit_type, spent, remaining)

    async def refund(self, decision: CreditDecision) -> None:
        """Give back a credit taken by try_spend.  No-op if none was taken."""
        if not decision.spent or decision.credit_type is None:
            return
        await self._ledger.increment(USER_CREDITS, decision.user_id, decision.credit_type, 1)
        CREDIT_DECISIONS.labels(credit_type=decision.credit_type, result="refunded").inc()
        logger.info(
            "Credit refunded user=%s credit=%s",
            decision.user_id,
            decision.credit_type,
            extra={"user_id": decision.user_id, "action_type": decision.action_type},
        )

    async def balances(self, user_id: str) -> dict[str, int]:
        doc = await self._ledger.get(USER_CREDITS, user_id)
        body = doc.body if doc is not None else {}
        return {credit_type: int(body.get(credit_type) or 0) for credit_type in CREDIT_TYPES}

    async def award(
        self, user_id: str, credit_type: str, amount: int, reason: str, actor_id: str
    ) -> dict[str, int]:
        """Add ``amount`` credits and record why.  Returns the new balances."""
        if credit_type not in CREDIT_TYPES:
            raise ValidationError(f"credit_type must be one of {', '.join(CREDIT_TYPES)}")
        if not 0 < amount <= MAX_AWARD:
            raise ValidationError(f"amount must be between 1 and {MAX_AWARD}")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required")

        for _ in range(_MAX_AWARD_ATTEMPTS):
            doc = await self._ledger.get(USER_CREDITS, user_id)
            body = dict(doc.body) if doc is not None else {}
            body[credit_type] = int(body.get(credit_type) or 0) + amount
            entry = {
                "user_id": user_id,
                "credit_type": credit_type,
                "amount": amount,
                "reason": reason,
                "awarded_by": actor_id,
                "created_at": self._clock(),
            }
            try:
                await self._ledger.commit(
                    [
                        Write(
                            USER_CREDITS,
                            user_id,
                            body,
                            doc.version if doc is not None else None,
                        ),
                        Write(CREDIT_HISTORY, uuid4().hex, entry, expected_version=None),
                    ]
                )
            except WriteConflict:
                continue
            CREDIT_DECISIONS.labels(credit_type=credit_type, result="awarded").inc()
            logger.info(
                "Credits awarded user=%s credit=%s amount=%d reason=%s by=%s",
                user_id,
                credit_type,
                amount,
                reason,
                actor_id,
                extra={"user_id": user_id},
            )
            return {t: int(body.get(t) or 0) for t in CREDIT_TYPES}

        raise ConflictError("credit balance changed concurrently, retry")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

credit_wallet = CreditWallet(ledger)
