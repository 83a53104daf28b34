"""Entitlement gate: is this action covered by the user's subscription?

THE DOUBLE-SPEND HAZARD
------------------------
A recruiter on a 30-postings-a-month plan sits at 29.  Two browser tabs
submit a posting at the same moment.  A naive read-check-write:

    used = get(counter)          # both read 29
    if used < limit:             # both pass
        put(counter, used + 1)   # both write 30, two postings granted

gives away a unit.  So the check and the increment are ONE ledger call
(``increment(..., limit=L)``) which the ledger performs atomically: the
second caller sees 30 and is refused.

FAIL CLOSED
------------
If the ledger cannot be read or written, LedgerUnavailable propagates.
Denying a covered action is recoverable (the user retries, or pays);
granting an uncovered one is not.

Counters are per (user, feature, UTC calendar month) and live in
``subscription_usage/{user}:{feature}:{YYYY-MM}`` as ``{"count": n}``.
A new month is a new key, which is the reset.
"""

from __future__ import annotations

import logging

from app.core.clock import Clock, billing_period, now_ms
from app.core.errors import LedgerUnavailable
from app.core.metrics import ENTITLEMENT_DECISIONS
from app.core.pricing import PRICING, FeatureAllowance, PricingConfig
from app.db.ledger import ledger
from app.models.billing import EntitlementDecision
from app.repos.ledger import SUBSCRIPTION_USAGE, USERS, LedgerStore

logger = logging.getLogger(__name__)

COUNT_FIELD = "count"


def counter_key(user_id: str, feature: str, period: str) -> str:
    return f"{user_id}:{feature}:{period}"


class EntitlementGate:
    def __init__(
        self,
        ledger: LedgerStore,
        pricing: PricingConfig,
        clock: Clock = now_ms,
    ) -> None:
        self._ledger = ledger
        self._pricing = pricing
        self._clock = clock

    async def try_consume(self, user_id: str, feature: str) -> EntitlementDecision:
        """Consume one unit of ``feature`` if the subscription covers it."""
        period = billing_period(self._clock())
        try:
            allowance = await self._allowance(user_id, feature)
            if allowance is None:
                return self._not_covered(feature, period)
            if allowance.limit is None:
                ENTITLEMENT_DECISIONS.labels(feature=feature, result="unlimited").inc()
                return EntitlementDecision(
                    feature=feature,
                    covered=True,
                    within_limit=True,
                    used=None,
                    limit=None,
                    period=period,
                )

            key = counter_key(user_id, feature, period)
            result = await self._ledger.increment(
                SUBSCRIPTION_USAGE, key, COUNT_FIELD, 1, limit=allowance.limit
            )
        except LedgerUnavailable:
            ENTITLEMENT_DECISIONS.labels(feature=feature, result="error").inc()
            logger.error(
                "Entitlement check failed closed user=%s feature=%s",
                user_id,
                feature,
                extra={"user_id": user_id, "feature": feature},
            )
            raise

        if not result.applied:
            ENTITLEMENT_DECISIONS.labels(feature=feature, result="exhausted").inc()
            logger.info(
                "Entitlement exhausted user=%s feature=%s used=%d limit=%d",
                user_id,
                feature,
                result.before,
                allowance.limit,
                extra={"user_id": user_id, "feature": feature},
            )
            return EntitlementDecision(
                feature=feature,
                covered=True,
                within_limit=False,
                used=result.before,
                limit=allowance.limit,
                period=period,
                counter_key=key,
            )

        ENTITLEMENT_DECISIONS.labels(feature=feature, result="consumed").inc()
        logger.info(
            "Entitlement consumed user=%s feature=%s used=%d/%d",
            user_id,
            feature,
            result.after,
            allowance.limit,
            extra={"user_id": user_id, "feature": feature},
        )
        return EntitlementDecision(
            feature=feature,
            covered=True,
            within_limit=True,
            used=result.after,
            limit=allowance.limit,
            period=period,
            counter_key=key,
        )

    async def check(self, user_id: str, feature: str) -> EntitlementDecision:
        """Read-only variant of try_consume: would a unit be available now?"""
        period = billing_period(self._clock())
        allowance = await self._allowance(user_id, feature)
        if allowance is None:
            return EntitlementDecision(feature, False, False, None, None, period)
        if allowance.limit is None:
            return EntitlementDecision(feature, True, True, None, None, period)
        key = counter_key(user_id, feature, period)
        doc = await self._ledger.get(SUBSCRIPTION_USAGE, key)
        used = int(doc.body.get(COUNT_FIELD) or 0) if doc is not None else 0
        return EntitlementDecision(
            feature=feature,
            covered=True,
            within_limit=used < allowance.limit,
            used=used,
            limit=allowance.limit,
            period=period,
            counter_key=key,
        )

    async def release(self, decision: EntitlementDecision) -> None:
        """Give back a unit taken by try_consume.

        Used when the transition the unit paid for was refused after the
        unit was consumed.  No-op for decisions that did not touch a
        counter.
        """
        if not decision.granted or decision.counter_key is None:
            return
        await self._ledger.increment(
            SUBSCRIPTION_USAGE, decision.counter_key, COUNT_FIELD, -1
        )
        logger.info(
            "Entitlement unit released counter=%s",
            decision.counter_key,
            extra={"feature": decision.feature},
        )

    async def _allowance(self, user_id: str, feature: str) -> FeatureAllowance | None:
        """The user's allowance for a feature, or None if not covered."""
        user = await self._ledger.get(USERS, user_id)
        if user is None:
            return None
        subscription = user.body.get("subscription") or {}
        if not isinstance(subscription, dict) or subscription.get("status") != "active":
            return None
        plan = subscription.get("plan")
        allowance = self._pricing.allowance(str(plan), feature)
        if allowance is None:
            if str(plan) not in self._pricing.plans:
                logger.warning("User %s has unknown plan %r", user_id, plan)
            return None
        if not allowance.included:
            return None
        return allowance

    def _not_covered(self, feature: str, period: str) -> EntitlementDecision:
        ENTITLEMENT_DECISIONS.labels(feature=feature, result="not_covered").inc()
        return EntitlementDecision(
            feature=feature,
            covered=False,
            within_limit=False,
            used=None,
            limit=None,
            period=period,
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

entitlement_gate = EntitlementGate(ledger, PRICING)
