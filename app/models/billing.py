from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

# FeeQuote.adjustment values
ROLE_OVERRIDE = "role_override"
CUSTOM_FEE = "custom_fee"
PROMOTION = "promotion"
NO_ADJUSTMENT = "none"

# PaymentObligation.status values
PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REQUIRES_REFUND = "requires_refund"

SETTLED_PAYMENT_STATUSES = frozenset({PAYMENT_COMPLETED, PAYMENT_REQUIRES_REFUND})


@dataclass(frozen=True, slots=True)
class FeeQuote:
    """The amount payable for one action, and why.

    Ephemeral: computed per request, never stored on its own (a copy is
    embedded in the payment obligation it produces).
    """

    action_type: str
    base_amount: int
    adjustment: str
    amount: int
    currency: str
    promotion_id: str | None = None
    degraded: bool = False

    def to_body(self) -> dict:
        return {
            "action_type": self.action_type,
            "base_amount": self.base_amount,
            "adjustment": self.adjustment,
            "amount": self.amount,
            "currency": self.currency,
            "promotion_id": self.promotion_id,
            "degraded": self.degraded,
        }


@dataclass(frozen=True, slots=True)
class Promotion:
    id: str
    action_type: str
    active: bool
    start_at: int
    end_at: int
    discount_type: str  # percentage|fixed
    discount_value: float

    def is_live(self, now: int) -> bool:
        return self.active and self.start_at <= now <= self.end_at

    @staticmethod
    def from_body(key: str, body: dict) -> Promotion:
        """Parse a stored promotion.  Raises ValueError when malformed."""
        discount_type = body.get("discount_type")
        if discount_type not in ("percentage", "fixed"):
            raise ValueError(f"unknown discount_type {discount_type!r}")
        value = body.get("discount_value")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"discount_value must be a non-negative number ({value!r})")
        try:
            start_at = int(body["start_at"])
            end_at = int(body["end_at"])
        except (KeyError, TypeError, ValueError):
            raise ValueError("start_at/end_at must be epoch milliseconds") from None
        return Promotion(
            id=key,
            action_type=str(body.get("action_type", "")),
            active=body.get("active") is True,
            start_at=start_at,
            end_at=end_at,
            discount_type=discount_type,
            discount_value=value,
        )


@dataclass(frozen=True, slots=True)
class EntitlementDecision:
    """Result of one entitlement check.

    covered:      the subscription includes the feature at all
    within_limit: a unit was available (and, for try_consume, taken)
    used / limit: counter value after the decision; None for unlimited
                  features and for uncovered ones
    """

    feature: str
    covered: bool
    within_limit: bool
    used: int | None
    limit: int | None
    period: str
    counter_key: str | None = None

    @property
    def granted(self) -> bool:
        return self.covered and self.within_limit

    @property
    def exhausted(self) -> bool:
        return self.covered and not self.within_limit


@dataclass(frozen=True, slots=True)
class CreditDecision:
    """Result of trying to pay for one action with a prepaid credit.

    remaining is the balance after the decision.  credit_type is None
    for actions no credit can pay for.
    """

    user_id: str
    action_type: str
    credit_type: str | None
    spent: bool
    remaining: int

    @property
    def reference(self) -> str:
        return f"{self.user_id}:{self.credit_type}"


@dataclass(frozen=True, slots=True)
class PaymentObligation:
    id: str
    user_id: str
    amount: int
    currency: str
    action_type: str
    target_id: str
    status: str
    adjustment: str
    created_at: int
    completed_at: int | None = None
    note: str | None = None

    @staticmethod
    def new(
        *,
        user_id: str,
        quote: FeeQuote,
        target_id: str,
        at: int,
        note: str | None = None,
    ) -> PaymentObligation:
        return PaymentObligation(
            id=f"pay_{uuid4().hex}",
            user_id=user_id,
            amount=quote.amount,
            currency=quote.currency,
            action_type=quote.action_type,
            target_id=target_id,
            status=PAYMENT_PENDING,
            adjustment=quote.adjustment,
            created_at=at,
            note=note,
        )

    def to_body(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "action_type": self.action_type,
            "target_id": self.target_id,
            "status": self.status,
            "adjustment": self.adjustment,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "note": self.note,
        }

    @staticmethod
    def from_body(body: dict) -> PaymentObligation:
        return PaymentObligation(
            id=body["id"],
            user_id=body["user_id"],
            amount=int(body["amount"]),
            currency=body["currency"],
            action_type=body["action_type"],
            target_id=body["target_id"],
            status=body["status"],
            adjustment=body.get("adjustment", NO_ADJUSTMENT),
            created_at=int(body["created_at"]),
            completed_at=body.get("completed_at"),
            note=body.get("note"),
        )


@dataclass(frozen=True, slots=True)
class PaymentCompletion:
    """Asynchronous callback from the payment collaborator."""

    payment_id: str
    action_type: str
    target_id: str
    status: str


@dataclass(frozen=True, slots=True)
class PaymentOutcome:
    payment_id: str
    result: str  # applied|duplicate|failed|requires_refund
    verification_request_id: str | None = None
