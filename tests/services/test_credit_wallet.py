from __future__ import annotations

import asyncio

import pytest

from app.core.errors import ConflictError, LedgerUnavailable, ValidationError, WriteConflict
from app.core.pricing import HIRE_SUCCESS_FEE, JOB_POSTING_FEE, VERIFICATION_FEE
from app.repos.ledger import CREDIT_HISTORY, USER_CREDITS, InMemoryLedger, Write
from app.services.credit_wallet import (
    MAX_AWARD,
    POSTING_CREDITS,
    VERIFICATION_CREDITS,
    CreditWallet,
)

NOW = 1_768_089_600_000


class _DownLedger(InMemoryLedger):
    async def get(self, *args, **kwargs):  # type: ignore[override]
        raise LedgerUnavailable("get failed")


class _BusyLedger(InMemoryLedger):
    async def commit(self, writes):  # type: ignore[override]
        raise WriteConflict(USER_CREDITS, writes[0].key)


def _wallet(ledger: InMemoryLedger | None = None) -> tuple[CreditWallet, InMemoryLedger]:
    ledger = ledger or InMemoryLedger()
    return CreditWallet(ledger, clock=lambda: NOW), ledger


def _fund(ledger: InMemoryLedger, user_id: str, **balances: int) -> None:
    asyncio.run(ledger.commit([Write(USER_CREDITS, user_id, balances)]))


def test_spend_takes_one_credit() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "c1", verification_credits=2)

    decision = asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE))

    assert decision.spent is True
    assert decision.credit_type == VERIFICATION_CREDITS
    assert decision.remaining == 1
    assert asyncio.run(wallet.balances("c1"))[VERIFICATION_CREDITS] == 1


def test_posting_credits_pay_for_job_postings_only() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "r1", posting_credits=1)

    assert asyncio.run(wallet.try_spend("r1", VERIFICATION_FEE)).spent is False
    posting = asyncio.run(wallet.try_spend("r1", JOB_POSTING_FEE))
    assert posting.spent is True
    assert posting.credit_type == POSTING_CREDITS


def test_empty_wallet_spends_nothing_and_writes_nothing() -> None:
    wallet, ledger = _wallet()

    decision = asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE))

    assert decision.spent is False
    assert decision.remaining == 0
    assert asyncio.run(ledger.get(USER_CREDITS, "c1")) is None


def test_zero_balance_is_not_spent() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "c1", verification_credits=0)
    assert asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE)).spent is False
    assert asyncio.run(wallet.balances("c1"))[VERIFICATION_CREDITS] == 0


def test_action_without_credit_type() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "r1", posting_credits=3, verification_credits=3)

    decision = asyncio.run(wallet.try_spend("r1", HIRE_SUCCESS_FEE))

    assert decision.credit_type is None
    assert decision.spent is False
    assert asyncio.run(wallet.balances("r1")) == {VERIFICATION_CREDITS: 3, POSTING_CREDITS: 3}


def test_refund_gives_the_credit_back() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "c1", verification_credits=1)
    decision = asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE))

    asyncio.run(wallet.refund(decision))

    assert asyncio.run(wallet.balances("c1"))[VERIFICATION_CREDITS] == 1


def test_refund_of_unspent_decision_is_noop() -> None:
    wallet, ledger = _wallet()
    decision = asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE))
    asyncio.run(wallet.refund(decision))
    assert asyncio.run(ledger.get(USER_CREDITS, "c1")) is None


def test_ledger_failure_fails_closed() -> None:
    wallet, _ = _wallet(_DownLedger())
    with pytest.raises(LedgerUnavailable):
        asyncio.run(wallet.try_spend("c1", VERIFICATION_FEE))


def test_concurrent_spenders_share_the_last_credit() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "c1", verification_credits=1)

    async def race() -> list[bool]:
        decisions = await asyncio.gather(
            *(wallet.try_spend("c1", VERIFICATION_FEE) for _ in range(8))
        )
        return [d.spent for d in decisions]

    spent = asyncio.run(race())
    assert spent.count(True) == 1
    assert asyncio.run(wallet.balances("c1"))[VERIFICATION_CREDITS] == 0


# ---- award ----


def test_award_adds_credits_and_records_history() -> None:
    wallet, ledger = _wallet()
    _fund(ledger, "c1", verification_credits=1)

    balances = asyncio.run(wallet.award("c1", VERIFICATION_CREDITS, 3, "  referral bonus ", "admin-1"))

    assert balances == {VERIFICATION_CREDITS: 4, POSTING_CREDITS: 0}
    history = asyncio.run(ledger.find(CREDIT_HISTORY))
    assert len(history) == 1
    assert history[0].body == {
        "user_id": "c1",
        "credit_type": VERIFICATION_CREDITS,
        "amount": 3,
        "reason": "referral bonus",
        "awarded_by": "admin-1",
        "created_at": NOW,
    }


def test_award_creates_wallet() -> None:
    wallet, ledger = _wallet()
    asyncio.run(wallet.award("r1", POSTING_CREDITS, 2, "welcome", "admin-1"))
    doc = asyncio.run(ledger.get(USER_CREDITS, "r1"))
    assert doc is not None and doc.body == {POSTING_CREDITS: 2}


@pytest.mark.parametrize(
    ("credit_type", "amount", "reason"),
    [
        ("gold_credits", 1, "bonus"),
        (VERIFICATION_CREDITS, 0, "bonus"),
        (VERIFICATION_CREDITS, -2, "bonus"),
        (VERIFICATION_CREDITS, MAX_AWARD + 1, "bonus"),
        (VERIFICATION_CREDITS, 1, "   "),
    ],
)
def test_award_validates_input(credit_type: str, amount: int, reason: str) -> None:
    wallet, ledger = _wallet()
    with pytest.raises(ValidationError):
        asyncio.run(wallet.award("c1", credit_type, amount, reason, "admin-1"))
    assert asyncio.run(ledger.find(CREDIT_HISTORY)) == []


def test_award_gives_up_after_repeated_conflicts() -> None:
    wallet, _ = _wallet(_BusyLedger())
    with pytest.raises(ConflictError):
        asyncio.run(wallet.award("c1", VERIFICATION_CREDITS, 1, "bonus", "admin-1"))
