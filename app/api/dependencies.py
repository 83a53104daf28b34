"""Authentication and role guards for the HTTP layer.

Every route except /health, /ready, /metrics and the payment
collaborator's callback needs a bearer token from the identity provider.
The guards only establish WHO is calling; whether that caller may touch
a given credential is decided in VerificationService, which sees the
credential's owner.

    principal: CurrentPrincipal      any authenticated caller
    principal: ReviewerPrincipal     admin or verifier
    principal: AdminPrincipal        admin only
"""

from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.models.principal import REVIEWER_ROLES, Principal
from app.services import token_service

logger = logging.getLogger(__name__)

# tokenUrl points at the identity provider; it only feeds the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_user(
    request: Request,
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Validate the bearer token and return the caller as a Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected on %s", request.url.path)
        raise _unauthorized("Token expired") from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected on %s: %s", request.url.path, e)
        raise _unauthorized("Invalid token") from None

    subject = claims["sub"]
    if not isinstance(subject, str) or not subject.strip():
        logger.warning("Token with empty subject rejected")
        raise _unauthorized("Invalid token")

    roles = claims.get("roles", [])
    principal = Principal(
        user_id=subject,
        roles=frozenset(r for r in roles if isinstance(r, str)) if isinstance(roles, list) else frozenset(),
    )
    logger.debug("Token validated", extra={"user_id": principal.user_id})
    return principal


def require_any_role(roles: set[str] | frozenset[str]):
    """Dependency factory: 403 unless the caller holds one of ``roles``."""
    required = frozenset(roles)

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_any_role(required):
            logger.warning(
                "Access denied: roles=%s required_any=%s",
                sorted(principal.roles),
                sorted(required),
                extra={"user_id": principal.user_id},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


def require_role(role: str):
    """Dependency factory: 403 unless the caller holds ``role``."""
    return require_any_role({role})


require_reviewer = require_any_role(REVIEWER_ROLES)
require_admin = require_role("admin")

CurrentPrincipal = Annotated[Principal, Depends(require_user)]
ReviewerPrincipal = Annotated[Principal, Depends(require_reviewer)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
