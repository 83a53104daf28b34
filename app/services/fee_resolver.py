"""Fee resolution: how much does this user pay for this action?

PRECEDENCE (first match wins)
------------------------------
  1. Role override     users/{id}.special_role has a configured amount
                       (admin pays 0, partner and early_adopter pay a
                       reduced flat fee).  A configured 0 is honoured.
  2. Custom fee        users/{id}.custom_fees[action_type]
  3. Promotion         a live promotion for the action type, applied to
                       the base fee and floored at 0.  When several are
                       live, the one leaving the LOWEST amount wins;
                       equal amounts fall back to the lowest promotion
                       id, so the choice never depends on store order.
  4. Base fee          PricingConfig.base_fees

The resolver is read-only.  It never blocks a caller on a ledger read
failure: it quotes the base fee, marks the quote ``degraded`` and bumps
fee_resolver_degraded_total so the fallback is visible.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from app.core.clock import Clock, now_ms
from app.core.errors import LedgerUnavailable, ValidationError
from app.core.metrics import FEE_RESOLUTIONS, FEE_RESOLVER_DEGRADED
from app.core.pricing import PRICING, PricingConfig
from app.db.ledger import ledger
from app.models.billing import (
    CUSTOM_FEE,
    NO_ADJUSTMENT,
    PROMOTION,
    ROLE_OVERRIDE,
    FeeQuote,
    Promotion,
)
from app.repos.ledger import PROMOTIONS, USERS, LedgerStore

logger = logging.getLogger(__name__)


def discounted_amount(base: int, promotion: Promotion) -> int:
    """Apply a promotion to a base fee, half-up to the cent, floored at 0."""
    if promotion.discount_type == "percentage":
        discount = (Decimal(base) * Decimal(str(promotion.discount_value)) / 100).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    else:
        discount = Decimal(str(promotion.discount_value)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    return max(base - int(discount), 0)


class FeeResolver:
    def __init__(
        self,
        ledger: LedgerStore,
        pricing: PricingConfig,
        clock: Clock = now_ms,
    ) -> None:
        self._ledger = ledger
        self._pricing = pricing
        self._clock = clock

    def require_action_type(self, action_type: str) -> str:
        """Reject anything but the configured billable actions."""
        if not self._pricing.is_known_action(action_type):
            raise ValidationError(
                f"unknown action_type {action_type!r}; expected one of "
                f"{', '.join(sorted(self._pricing.base_fees))}"
            )
        return action_type

    async def resolve_fee(self, user_id: str, action_type: str) -> FeeQuote:
        currency = self._pricing.currency

        if not self._pricing.is_known_action(action_type):
            logger.warning(
                "Fee requested for unknown action_type=%s user=%s, quoting 0",
                action_type,
                user_id,
                extra={"user_id": user_id, "action_type": action_type},
            )
            FEE_RESOLUTIONS.labels(adjustment="unknown_action").inc()
            return FeeQuote(
                action_type=action_type,
                base_amount=0,
                adjustment=NO_ADJUSTMENT,
                amount=0,
                currency=currency,
            )

        base = self._pricing.base_fees[action_type]
        try:
            quote = await self._resolve(user_id, action_type, base)
        except LedgerUnavailable:
            FEE_RESOLVER_DEGRADED.inc()
            logger.warning(
                "Ledger unavailable, quoting base fee user=%s action_type=%s",
                user_id,
                action_type,
                extra={"user_id": user_id, "action_type": action_type},
            )
            quote = FeeQuote(
                action_type=action_type,
                base_amount=base,
                adjustment=NO_ADJUSTMENT,
                amount=base,
                currency=currency,
                degraded=True,
            )

        FEE_RESOLUTIONS.labels(adjustment=quote.adjustment).inc()
        logger.debug(
            "Fee resolved user=%s action_type=%s amount=%d adjustment=%s",
            user_id,
            action_type,
            quote.amount,
            quote.adjustment,
        )
        return quote

    async def _resolve(self, user_id: str, action_type: str, base: int) -> FeeQuote:
        currency = self._pricing.currency
        user = await self._ledger.get(USERS, user_id)
        profile = user.body if user is not None else {}

        override = self._pricing.role_override(profile.get("special_role"), action_type)
        if override is not None:
            return FeeQuote(action_type, base, ROLE_OVERRIDE, override, currency)

        custom = _custom_fee(profile, action_type, user_id)
        if custom is not None:
            return FeeQuote(action_type, base, CUSTOM_FEE, custom, currency)

        best = await self._best_promotion(action_type, base)
        if best is not None:
            promotion, amount = best
            return FeeQuote(
                action_type, base, PROMOTION, amount, currency, promotion_id=promotion.id
            )

        return FeeQuote(action_type, base, NO_ADJUSTMENT, base, currency)

    async def _best_promotion(
        self, action_type: str, base: int
    ) -> tuple[Promotion, int] | None:
        now = self._clock()
        docs = await self._ledger.find(
            PROMOTIONS, {"action_type": action_type, "active": True}
        )
        candidates: list[tuple[int, str, Promotion]] = []
        for doc in docs:
            try:
                promotion = Promotion.from_body(doc.key, doc.body)
            except ValueError as exc:
                logger.warning("Skipping malformed promotion %s: %s", doc.key, exc)
                continue
            if promotion.is_live(now):
                candidates.append(
                    (discounted_amount(base, promotion), promotion.id, promotion)
                )
        if not candidates:
            return None
        amount, _, promotion = min(candidates, key=lambda c: (c[0], c[1]))
        return promotion, amount


def _custom_fee(profile: dict, action_type: str, user_id: str) -> int | None:
    custom_fees = profile.get("custom_fees") or {}
    if not isinstance(custom_fees, dict) or action_type not in custom_fees:
        return None
    value = custom_fees[action_type]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        logger.warning(
            "Ignoring invalid custom fee user=%s action_type=%s value=%r",
            user_id,
            action_type,
            value,
        )
        return None
    return value


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

fee_resolver = FeeResolver(ledger, PRICING)
