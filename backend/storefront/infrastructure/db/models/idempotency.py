"""
Idempotency lock and result tables.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from storefront.infrastructure.db.models.base import CreatedAtMixin


class IdempotencyLock(CreatedAtMixin, table=True):
    """Ephemeral exclusive claim on an operation, re-acquirable after expiry."""

    __tablename__ = "idempotency_locks"

    lock_key: str = Field(..., primary_key=True, max_length=64)
    owner: str = Field(..., max_length=64)
    expires_at: datetime = Field(..., sa_column=Column(DateTime(timezone=True), nullable=False, index=True))


class IdempotencyResult(CreatedAtMixin, table=True):
    """Cached outcome of a completed idempotent operation."""

    __tablename__ = "idempotency_results"

    key: str = Field(..., primary_key=True, max_length=255)
    result: dict = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False))
    expires_at: datetime = Field(..., sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
