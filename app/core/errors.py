"""Domain error taxonomy.

Services raise these; app/api/errors.py maps them onto HTTP responses.
Keeping them free of FastAPI imports lets the worker and the tests use
the services without an HTTP layer.

  ValidationError            malformed input, nothing written        422
  NotFoundError              unknown credential/request/payment      404
  PermissionDeniedError      caller may not act on this resource     403
  ConflictError              state machine edge refused, no writes   409
  PaymentPending             billing not yet satisfied               402
  LedgerUnavailable          store failure, gate/state machine deny  503
  ExternalCollaboratorError  attestor/narrative/payment failure      502

Entitlement exhaustion is not an error: EntitlementDecision.exhausted
tells the caller to fall back to the fee path.  WriteConflict is the
ledger's optimistic-version failure; services turn it into
ConflictError (or retry) before it can reach a caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.models.billing import PaymentObligation


class DomainError(Exception):
    """Base for errors that carry a client-safe message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    pass


class NotFoundError(DomainError):
    pass


class PermissionDeniedError(DomainError):
    pass


class ConflictError(DomainError):
    def __init__(self, message: str, *, current_state: str | None = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class PaymentPending(DomainError):
    def __init__(self, obligation: PaymentObligation) -> None:
        super().__init__("payment required before this action can proceed")
        self.obligation = obligation


class LedgerUnavailable(DomainError):
    pass


class WriteConflict(DomainError):
    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"concurrent write on {collection}/{key}")
        self.collection = collection
        self.key = key


class ExternalCollaboratorError(DomainError):
    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(message)
        self.collaborator = collaborator
