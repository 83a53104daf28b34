"""Payment collaborator callback.

POST /v1/payments/completions

Delivered at-least-once by the payment collaborator.  When
PAYMENT_WEBHOOK_SECRET is configured the raw body must carry a valid
``X-Payment-Signature: <hex hmac-sha256>``; without a secret (dev and
test only; load_settings refuses to start prod without one) signatures
are not checked.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Literal

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.core.config import SETTINGS
from app.models.billing import PaymentCompletion
from app.services.billing_service import billing_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])

SIGNATURE_HEADER = "X-Payment-Signature"


class PaymentCompletionIn(BaseModel):
    payment_id: str = Field(min_length=1, max_length=200)
    action_type: str = Field(min_length=1, max_length=100)
    target_id: str = Field(min_length=1, max_length=200)
    status: Literal["completed", "failed", "canceled"]


class PaymentOutcomeOut(BaseModel):
    payment_id: str
    result: str
    verification_request_id: str | None


def sign_payload(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _verify_signature(secret: str | None, payload: bytes, signature: str | None) -> None:
    if secret is None:
        return
    if not signature or not hmac.compare_digest(sign_payload(secret, payload), signature):
        logger.warning("Payment completion with bad or missing signature rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid payment signature",
        )


@router.post("/completions", response_model=PaymentOutcomeOut)
async def payment_completion(request: Request) -> PaymentOutcomeOut:
    payload = await request.body()
    _verify_signature(
        SETTINGS.payment_webhook_secret, payload, request.headers.get(SIGNATURE_HEADER)
    )

    try:
        body = PaymentCompletionIn.model_validate_json(payload)
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from None

    outcome = await billing_service.handle_payment_completion(
        PaymentCompletion(
            payment_id=body.payment_id,
            action_type=body.action_type,
            target_id=body.target_id,
            status=body.status,
        )
    )
    return PaymentOutcomeOut(
        payment_id=outcome.payment_id,
        result=outcome.result,
        verification_request_id=outcome.verification_request_id,
    )
