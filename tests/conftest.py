from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.api.ratelimit import _rate_limiter
from app.db.ledger import ledger
from app.main import app
from app.repos.ledger import USER_CREDITS, USERS, Write
from app.services import token_service
from app.services.task_queue import task_queue

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_ledger() -> None:
    """Clear the in-memory ledger between tests."""
    if hasattr(ledger, "_docs"):
        ledger._docs.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Clear rate limit buckets between tests so limits don't bleed."""
    if hasattr(_rate_limiter, "_buckets"):
        _rate_limiter._buckets.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear task queues between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token() -> str:
    """Token with default role (user)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    """Token with admin role."""
    return mint_token(username="test-admin", roles=["admin"])


@pytest.fixture
def verifier_token() -> str:
    """Token with verifier role."""
    return mint_token(username="test-verifier", roles=["verifier"])


# ---------------------------------------------------------------------------
# Ledger seed helpers
# ---------------------------------------------------------------------------


async def seed_user(
    user_id: str = "test-user",
    *,
    special_role: str | None = None,
    plan: str | None = None,
    subscription_status: str = "active",
    custom_fees: dict | None = None,
    skills: list[str] | None = None,
) -> None:
    """Write a user profile document straight into the ledger."""
    body: dict = {"special_role": special_role, "skills": skills or []}
    if plan is not None:
        body["subscription"] = {"plan": plan, "status": subscription_status}
    if custom_fees is not None:
        body["custom_fees"] = custom_fees
    await ledger.commit([Write(USERS, user_id, body)])


async def seed_credits(user_id: str = "test-user", *, verification: int = 0, posting: int = 0) -> None:
    """Write a prepaid credit balance straight into the ledger."""
    await ledger.commit(
        [
            Write(
                USER_CREDITS,
                user_id,
                {"verification_credits": verification, "posting_credits": posting},
            )
        ]
    )
