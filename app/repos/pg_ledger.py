"""PostgreSQL implementation of LedgerStore.

All documents live in one JSONB table (``ledger_documents``).  Each
public method opens its own session and transaction, so a commit() is
exactly one Postgres transaction: either every write lands or none do.

Atomicity comes from row locks, not application locks:
  - increment() inserts the counter row if missing, then
    SELECT ... FOR UPDATE; concurrent callers for the same counter
    queue on the lock and each sees the previous caller's value.
  - commit() locks every target row before checking versions.

Driver/connection failures surface as LedgerUnavailable.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import LedgerUnavailable, WriteConflict
from app.db.tables import LedgerDocumentRow
from app.repos.ledger import (
    ANY_VERSION,
    Document,
    IncrementResult,
    Write,
    next_counter_value,
)

logger = logging.getLogger(__name__)


class PgLedger:
    """Satisfies the LedgerStore Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, collection: str, key: str) -> Document | None:
        stmt = select(LedgerDocumentRow).where(
            LedgerDocumentRow.collection == collection,
            LedgerDocumentRow.key == key,
        )
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise _unavailable("get", collection, exc) from exc
        return _row_to_document(row) if row is not None else None

    async def find(
        self,
        collection: str,
        where: Mapping[str, object] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        stmt = select(LedgerDocumentRow).where(
            LedgerDocumentRow.collection == collection
        )
        if where:
            # JSONB containment (@>) uses the GIN index on body.
            stmt = stmt.where(LedgerDocumentRow.body.contains(dict(where)))
        stmt = stmt.order_by(LedgerDocumentRow.key)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise _unavailable("find", collection, exc) from exc
        return [_row_to_document(r) for r in rows]

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
        seed = (
            insert(LedgerDocumentRow)
            .values(collection=collection, key=key, body={}, version=0)
            .on_conflict_do_nothing(index_elements=["collection", "key"])
        )
        lock = (
            select(LedgerDocumentRow)
            .where(
                LedgerDocumentRow.collection == collection,
                LedgerDocumentRow.key == key,
            )
            .with_for_update()
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(seed)
                row = (await session.execute(lock)).scalar_one()
                before = int(row.body.get(field) or 0)
                after = next_counter_value(before, delta, limit, floor)
                if after is None:
                    return IncrementResult(applied=False, before=before, after=before)
                row.body = {**row.body, field: after}
                row.version = row.version + 1
        except SQLAlchemyError as exc:
            raise _unavailable("increment", collection, exc) from exc
        return IncrementResult(applied=True, before=before, after=after)

    async def commit(self, writes: Sequence[Write]) -> list[Document | None]:
        results: list[Document | None] = []
        try:
            async with self._session_factory() as session, session.begin():
                for w in writes:
                    results.append(await self._apply(session, w))
        except IntegrityError as exc:
            # Lost an insert race: someone created the document between
            # our existence check and our INSERT.
            first = writes[0] if writes else None
            logger.info("Ledger commit lost insert race: %s", exc.orig)
            raise WriteConflict(
                first.collection if first else "?", first.key if first else "?"
            ) from exc
        except SQLAlchemyError as exc:
            raise _unavailable("commit", writes[0].collection if writes else "?", exc) from exc
        return results

    async def ping(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise _unavailable("ping", "-", exc) from exc

    async def _apply(self, session: AsyncSession, w: Write) -> Document | None:
        stmt = (
            select(LedgerDocumentRow)
            .where(
                LedgerDocumentRow.collection == w.collection,
                LedgerDocumentRow.key == w.key,
            )
            .with_for_update()
        )
        row = (await session.execute(stmt)).scalar_one_or_none()

        if w.expected_version != ANY_VERSION:
            if w.expected_version is None and row is not None:
                raise WriteConflict(w.collection, w.key)
            if w.expected_version is not None and (
                row is None or row.version != w.expected_version
            ):
                raise WriteConflict(w.collection, w.key)

        if w.body is None:
            if row is not None:
                await session.execute(
                    delete(LedgerDocumentRow).where(
                        LedgerDocumentRow.collection == w.collection,
                        LedgerDocumentRow.key == w.key,
                    )
                )
            return None

        if row is None:
            row = LedgerDocumentRow(
                collection=w.collection, key=w.key, body=w.body, version=1
            )
            session.add(row)
            await session.flush()
        else:
            row.body = w.body
            row.version = row.version + 1
        return Document(w.collection, w.key, dict(w.body), row.version)


def _unavailable(op: str, collection: str, exc: Exception) -> LedgerUnavailable:
    logger.warning("Ledger %s on %s failed: %s", op, collection, exc)
    return LedgerUnavailable(f"ledger {op} failed")


def _row_to_document(row: LedgerDocumentRow) -> Document:
    return Document(
        collection=row.collection,
        key=row.key,
        body=dict(row.body or {}),
        version=row.version,
    )
