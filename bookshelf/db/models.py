"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Merchant(Base):
    """
    ORM model for merchants table.

    One row per company. Holds subscription state and the free-tier flag.
    """

    __tablename__ = "merchants"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription state
    subscription_status: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscription_plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Free tier: one concurrently-existing book without a subscription
    free_book_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "subscription_status IN ('free', 'active', 'cancelled', 'expired')",
            name="ck_merchant_subscription_status",
        ),
        Index("idx_merchants_subscription_id", "subscription_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Merchant(company_id={self.company_id}, "
            f"status={self.subscription_status}, free_book_used={self.free_book_used})>"
        )


class Book(Base):
    """
    ORM model for books table.

    Paywall invariant: price and currency are set iff is_behind_paywall.
    """

    __tablename__ = "books"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    company_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("merchants.company_id"), nullable=False
    )

    # Document
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    subtitle: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pdf_url: Mapped[str] = mapped_column(Text, nullable=False)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Display
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Paywall
    is_behind_paywall: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "(is_behind_paywall AND price IS NOT NULL AND currency IS NOT NULL) "
            "OR (NOT is_behind_paywall AND price IS NULL AND currency IS NULL)",
            name="ck_book_paywall_price",
        ),
        Index("idx_books_company_id", "company_id"),
        Index("idx_books_company_order", "company_id", "display_order"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Book(id={self.id}, company_id={self.company_id}, "
            f"paywalled={self.is_behind_paywall})>"
        )


class AccessGrant(Base):
    """
    ORM model for book_access table.

    Append-only ledger of paid access. At most one row per (book_id, user_id).
    """

    __tablename__ = "book_access"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    book_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("books.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    price_paid: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency_paid: Mapped[str | None] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("book_id", "user_id", name="uq_book_access_book_user"),
        Index("idx_book_access_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<AccessGrant(book_id={self.book_id}, user_id={self.user_id})>"
