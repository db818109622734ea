"""Create merchants, books and book_access tables.

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create merchants table
    # ========================================================================
    op.create_table(
        "merchants",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("company_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="free"),
        sa.Column("subscription_plan_id", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("subscription_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("free_book_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.UniqueConstraint("company_id", name="uq_merchants_company_id"),
        sa.CheckConstraint(
            "subscription_status IN ('free', 'active', 'cancelled', 'expired')",
            name="ck_merchant_subscription_status",
        ),
    )
    op.create_index("idx_merchants_subscription_id", "merchants", ["subscription_id"])

    # ========================================================================
    # Create books table
    # ========================================================================
    op.create_table(
        "books",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column(
            "company_id",
            sa.String(255),
            sa.ForeignKey("merchants.company_id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("subtitle", sa.String(500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pdf_url", sa.Text(), nullable=False),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("is_visible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_behind_paywall", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint(
            "(is_behind_paywall AND price IS NOT NULL AND currency IS NOT NULL) "
            "OR (NOT is_behind_paywall AND price IS NULL AND currency IS NULL)",
            name="ck_book_paywall_price",
        ),
    )
    op.create_index("idx_books_company_id", "books", ["company_id"])
    op.create_index("idx_books_company_order", "books", ["company_id", "display_order"])

    # ========================================================================
    # Create book_access table (append-only grant ledger)
    # ========================================================================
    op.create_table(
        "book_access",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column(
            "book_id",
            UUID(as_uuid=True),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "purchased_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("price_paid", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency_paid", sa.String(10), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.UniqueConstraint("book_id", "user_id", name="uq_book_access_book_user"),
    )
    op.create_index("idx_book_access_user_id", "book_access", ["user_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_book_access_user_id", table_name="book_access")
    op.drop_table("book_access")

    op.drop_index("idx_books_company_order", table_name="books")
    op.drop_index("idx_books_company_id", table_name="books")
    op.drop_table("books")

    op.drop_index("idx_merchants_subscription_id", table_name="merchants")
    op.drop_table("merchants")
