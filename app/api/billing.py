"""Billing endpoints.

- GET  /v1/billing/quote/{action_type}         — what would this action cost me?
- GET  /v1/billing/entitlements/{feature}      — read-only allowance check
- GET  /v1/billing/credits                      — prepaid credit balances
- POST /v1/billing/actions/{action_type}       — authorize a billable action

``actions`` is the generic path for billable actions other than
verification (job postings, hire-success fees).  Verification is billed
through POST /v1/credentials/{id}/verification, which opens the request
in the same step.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentPrincipal
from app.api.ratelimit import require_billable_rate_limit
from app.core.errors import NotFoundError, ValidationError
from app.core.pricing import PRICING, VERIFICATION_FEE
from app.models.billing import CreditDecision, EntitlementDecision, FeeQuote, PaymentObligation
from app.services.billing_service import billing_service
from app.services.credit_wallet import credit_wallet
from app.services.entitlement_gate import entitlement_gate
from app.services.fee_resolver import fee_resolver

router = APIRouter(prefix="/v1/billing", tags=["billing"])


class FeeQuoteOut(BaseModel):
    action_type: str
    base_amount: int
    adjustment: str
    amount: int
    currency: str
    promotion_id: str | None
    degraded: bool


class EntitlementOut(BaseModel):
    feature: str
    covered: bool
    within_limit: bool
    used: int | None
    limit: int | None
    period: str


class CreditOut(BaseModel):
    credit_type: str | None
    spent: bool
    remaining: int


class CreditBalancesOut(BaseModel):
    verification_credits: int
    posting_credits: int


class PaymentObligationOut(BaseModel):
    id: str
    amount: int
    currency: str
    action_type: str
    target_id: str
    status: str
    adjustment: str
    created_at: int


class ActionIn(BaseModel):
    target_id: str = Field(min_length=1, max_length=200)


class BillingDecisionOut(BaseModel):
    outcome: str
    action_type: str
    target_id: str
    entitlement: EntitlementOut | None = None
    credit: CreditOut | None = None
    quote: FeeQuoteOut | None = None
    payment: PaymentObligationOut | None = None


def quote_out(quote: FeeQuote) -> FeeQuoteOut:
    return FeeQuoteOut(**quote.to_body())


def entitlement_out(decision: EntitlementDecision) -> EntitlementOut:
    return EntitlementOut(
        feature=decision.feature,
        covered=decision.covered,
        within_limit=decision.within_limit,
        used=decision.used,
        limit=decision.limit,
        period=decision.period,
    )


def credit_out(decision: CreditDecision) -> CreditOut:
    return CreditOut(
        credit_type=decision.credit_type,
        spent=decision.spent,
        remaining=decision.remaining,
    )


def obligation_out(obligation: PaymentObligation) -> PaymentObligationOut:
    return PaymentObligationOut(
        id=obligation.id,
        amount=obligation.amount,
        currency=obligation.currency,
        action_type=obligation.action_type,
        target_id=obligation.target_id,
        status=obligation.status,
        adjustment=obligation.adjustment,
        created_at=obligation.created_at,
    )


@router.get("/quote/{action_type}", response_model=FeeQuoteOut)
async def get_quote(
    action_type: str,
    principal: CurrentPrincipal,
) -> FeeQuoteOut:
    fee_resolver.require_action_type(action_type)
    return quote_out(await fee_resolver.resolve_fee(principal.user_id, action_type))


@router.get("/entitlements/{feature}", response_model=EntitlementOut)
async def get_entitlement(
    feature: str,
    principal: CurrentPrincipal,
) -> EntitlementOut:
    known = {f for allowances in PRICING.plans.values() for f in allowances}
    if feature not in known:
        raise NotFoundError(f"unknown feature {feature!r}")
    return entitlement_out(await entitlement_gate.check(principal.user_id, feature))


@router.get("/credits", response_model=CreditBalancesOut)
async def get_credits(principal: CurrentPrincipal) -> CreditBalancesOut:
    return CreditBalancesOut(**await credit_wallet.balances(principal.user_id))


@router.post(
    "/actions/{action_type}",
    response_model=BillingDecisionOut,
    dependencies=[Depends(require_billable_rate_limit)],
)
async def authorize_action(
    action_type: str,
    body: ActionIn,
    response: Response,
    principal: CurrentPrincipal,
) -> BillingDecisionOut:
    """200 when the action is cleared, 402 with a payment obligation otherwise."""
    if action_type == VERIFICATION_FEE:
        raise ValidationError(
            "verification is billed via POST /v1/credentials/{id}/verification"
        )
    decision = await billing_service.authorize(principal, action_type, body.target_id)
    if decision.obligation is not None:
        response.status_code = status.HTTP_402_PAYMENT_REQUIRED
    return BillingDecisionOut(
        outcome=decision.outcome,
        action_type=decision.action_type,
        target_id=decision.target_id,
        entitlement=entitlement_out(decision.entitlement) if decision.entitlement else None,
        credit=credit_out(decision.credit) if decision.credit else None,
        quote=quote_out(decision.quote) if decision.quote else None,
        payment=obligation_out(decision.obligation) if decision.obligation else None,
    )
