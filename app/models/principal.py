from __future__ import annotations

from dataclasses import dataclass

REVIEWER_ROLES = frozenset({"admin", "verifier"})


@dataclass(frozen=True, slots=True)
class Principal:
    """The caller, as established by a validated bearer token.

    The services trust it as given.  ``roles`` are platform roles from
    the token (user, verifier, admin); billing roles such as partner
    live on the ledger user profile, not here.
    """

    user_id: str
    roles: frozenset[str]

    def has_any_role(self, roles: set[str] | frozenset[str]) -> bool:
        return not self.roles.isdisjoint(roles)

    def is_reviewer(self) -> bool:
        return self.has_any_role(REVIEWER_ROLES)

    def owns(self, owner_id: str) -> bool:
        return self.user_id == owner_id

    def may_read(self, owner_id: str) -> bool:
        return self.owns(owner_id) or self.is_reviewer()
