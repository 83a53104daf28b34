"""Ledger table definitions.

The ledger is a document store over Postgres: every collection
(users, credentials, verificationRequests, subscription_usage, ...)
shares one table, keyed by (collection, key), with the document body in
JSONB and an integer ``version`` for optimistic concurrency.  Adding a
collection therefore needs no migration.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, MetaData, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Stable constraint/index names so autogenerate diffs stay quiet.
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class LedgerDocumentRow(Base):
    """One ledger document.  (collection, key) is the natural key."""

    __tablename__ = "ledger_documents"
    __table_args__ = (
        Index("ix_ledger_documents_body", "body", postgresql_using="gin"),
    )

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    body: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
