from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class QueueItem(Base):
    __tablename__ = "delivery_queue"
    __table_args__ = (
        # Claim lookup scans ready pending rows by due time.
        Index("ix_delivery_queue_status_next_retry", "status", "next_retry_at"),
        # Dedup looks up recent rows for the same kind and recipient.
        Index("ix_delivery_queue_kind_target_created", "kind", "target", "created_at"),
        # Critical passes filter by kind within a status.
        Index("ix_delivery_queue_status_kind_created", "status", "kind", "created_at"),
        # Claim re-read resolves exactly the rows one worker won.
        Index("ix_delivery_queue_owner_updated", "owner_id", "updated_at"),
        Index("ix_delivery_queue_business_key", "business_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    # Recipient address, or the job type for generic jobs.
    target: Mapped[str] = mapped_column(String, nullable=False)
    # JSON document; immutable once written.
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    # Raw JSON text so corrupt legacy rows can still be read and quarantined.
    metadata_raw: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    # Well-known metadata keys copied out for indexed dedup and search.
    business_key: Mapped[str | None] = mapped_column(String, nullable=True)
    discriminator: Mapped[str | None] = mapped_column(String, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Non-null only while a worker holds the item in processing.
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_quarantined: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
