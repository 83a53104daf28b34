"""Ledger store: document persistence over named collections.

Everything durable in this service (user billing profiles, usage
counters, prepaid credit balances, credentials, verification requests,
promotions, payment obligations, ledger credits) is a JSON document
addressed by ``(collection, key)``.  The services never talk to
Postgres directly; they use the four operations below, which are the ONLY
synchronization points in the system (there are no in-process locks).

  get        read one document
  find       read documents whose top-level fields equal the filter
  increment  atomic conditional counter update
  commit     all-or-nothing multi-document write with version checks

OPTIMISTIC VERSIONING
----------------------
Every document carries a ``version`` that goes up by one on each
write.  A ``Write`` names the version it was computed from; if another
writer got there first the whole commit fails with WriteConflict and
nothing is applied.  ``expected_version=None`` means "must not exist
yet" (create), ``ANY_VERSION`` skips the check.

Two implementations satisfy the Protocol: InMemoryLedger (dev/tests)
and PgLedger (app/repos/pg_ledger.py).  The module-level singleton is
chosen in app/db/ledger.py.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.core.errors import WriteConflict

USERS = "users"
SUBSCRIPTION_USAGE = "subscription_usage"
CREDENTIALS = "credentials"
VERIFICATION_REQUESTS = "verificationRequests"
PROMOTIONS = "promotions"
PAYMENT_INTENTS = "payment_intents"
TRANSACTIONS = "transactions"
USER_CREDITS = "user_credits"
CREDIT_HISTORY = "credit_history"

ANY_VERSION = -1


@dataclass(frozen=True, slots=True)
class Document:
    collection: str
    key: str
    body: dict
    version: int


@dataclass(frozen=True, slots=True)
class Write:
    """One document mutation inside a commit.

    body=None deletes the document.
    """

    collection: str
    key: str
    body: dict | None
    expected_version: int | None = ANY_VERSION


@dataclass(frozen=True, slots=True)
class IncrementResult:
    applied: bool
    before: int
    after: int


@runtime_checkable
class LedgerStore(Protocol):
    async def get(self, collection: str, key: str) -> Document | None: ...

    async def find(
        self,
        collection: str,
        where: Mapping[str, object] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]: ...

    async def increment(
        self,
        collection: str,
        key: str,
        field: str,
        delta: int = 1,
        *,
        limit: int | None = None,
        floor: int | None = None,
    ) -> IncrementResult: ...

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]: ...

    async def ping(self) -> None: ...


def next_counter_value(
    current: int, delta: int, limit: int | None, floor: int | None = None
) -> int | None:
    """Counter arithmetic shared by both backends.

    Returns the new value, or None when the update is refused: a positive
    delta that would push the counter past ``limit``, or a negative delta
    that would take it below ``floor``.  Without a floor, negative deltas
    clamp at zero.
    """
    after = current + delta
    if delta > 0 and limit is not None and after > limit:
        return None
    if delta < 0 and floor is not None and after < floor:
        return None
    return max(after, 0)


def matches(body: Mapping[str, object], where: Mapping[str, object] | None) -> bool:
    if not where:
        return True
    return all(body.get(k) == v for k, v in where.items())


class InMemoryLedger:
    """Dict-backed ledger for dev and tests.

    No method awaits between reading and writing, so each call runs to
    completion on the event loop without interleaving; that is what
    makes increment and commit atomic here.  Bodies are deep-copied in
    and out so callers can never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], Document] = {}

    async def get(self, collection: str, key: str) -> Document | None:
        doc = self._docs.get((collection, key))
        return _copy(doc) if doc is not None else None

    async def find(
        self,
        collection: str,
        where: Mapping[str, object] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        found = [
            _copy(doc)
            for (coll, _), doc in sorted(self._docs.items())
            if coll == collection and matches(doc.body, where)
        ]
        return found[:limit] if limit is not None else found

    async def increment(
        self,
        collection: str,
        key: str,
        field: str,
        delta: int = 1,
        *,
        limit: int | None = None,
        floor: int | None = None,
    ) -> IncrementResult:
        doc = self._docs.get((collection, key))
        body = dict(doc.body) if doc is not None else {}
        before = int(body.get(field) or 0)
        after = next_counter_value(before, delta, limit, floor)
        if after is None:
            return IncrementResult(applied=False, before=before, after=before)
        body[field] = after
        version = doc.version + 1 if doc is not None else 1
        self._docs[(collection, key)] = Document(collection, key, body, version)
        return IncrementResult(applied=True, before=before, after=after)

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]:
        # Validate everything first so a conflict leaves no partial writes.
        for w in writes:
            _check_version(w, self._docs.get((w.collection, w.key)))

        results: list[Document | None] = []
        for w in writes:
            ident = (w.collection, w.key)
            if w.body is None:
                self._docs.pop(ident, None)
                results.append(None)
                continue
            current = self._docs.get(ident)
            version = current.version + 1 if current is not None else 1
            doc = Document(w.collection, w.key, copy.deepcopy(w.body), version)
            self._docs[ident] = doc
            results.append(_copy(doc))
        return results

    async def ping(self) -> None:
        return None


def _check_version(write: Write, current: Document | None) -> None:
    if write.expected_version == ANY_VERSION:
        return
    if write.expected_version is None:
        if current is not None:
            raise WriteConflict(write.collection, write.key)
        return
    if current is None or current.version != write.expected_version:
        raise WriteConflict(write.collection, write.key)


def _copy(doc: Document) -> Document:
    return Document(doc.collection, doc.key, copy.deepcopy(doc.body), doc.version)
