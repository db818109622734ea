"""
Ledger Store - Durable records for merchants, books and access grants.

Pure data access; no business logic. The entitlement services depend on the
LedgerStore protocol and receive a store bound to one database session.

NO DICTIONARIES - All reads return strongly typed domain models.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from bookshelf.db.models import AccessGrant, Book, Merchant, utc_now
from bookshelf.db.session import get_write_session
from bookshelf.exceptions import WriteVerificationError
from bookshelf.models.api import SubscriptionStatus
from bookshelf.models.domain import (
    BookData,
    BookDraft,
    GrantIntent,
    MerchantData,
    SubscriptionUpdate,
)


class LedgerStore(Protocol):
    """
    Ledger store protocol.

    Writes are flushed but not committed; callers own the transaction
    boundary via commit()/rollback().
    """

    async def get_merchant(self, company_id: str) -> MerchantData | None: ...

    async def lock_merchant(self, company_id: str) -> MerchantData | None:
        """Read the merchant and hold a row lock until the transaction ends."""
        ...

    async def create_merchant(self, company_id: str, name: str | None = None) -> MerchantData:
        """Insert the merchant if absent and return the stored row."""
        ...

    async def update_subscription(self, company_id: str, update: SubscriptionUpdate) -> bool: ...

    async def set_free_book_used(self, company_id: str, used: bool) -> None: ...

    async def count_books(self, company_id: str) -> int: ...

    async def get_book(self, book_id: UUID) -> BookData | None: ...

    async def list_books(self, company_id: str) -> list[BookData]: ...

    async def insert_book(
        self, company_id: str, draft: BookDraft, display_order: int
    ) -> BookData: ...

    async def save_book(self, book: BookData) -> BookData: ...

    async def delete_book(self, book_id: UUID) -> bool: ...

    async def set_display_order(self, company_id: str, book_id: UUID, display_order: int) -> bool: ...

    async def has_grant(self, book_id: UUID, user_id: str) -> bool: ...

    async def insert_grant_if_absent(self, intent: GrantIntent) -> bool:
        """
        Insert an access grant unless one exists for (book_id, user_id).

        Returns:
            True if a grant already existed (nothing written), False if inserted
        """
        ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


LedgerStoreFactory = Callable[[], AbstractAsyncContextManager[LedgerStore]]


class SqlLedgerStore:
    """
    PostgreSQL ledger store over an async SQLAlchemy session.

    Implements the LedgerStore protocol.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger store with database session."""
        self.session = session

    # ========================================================================
    # Merchants
    # ========================================================================

    async def get_merchant(self, company_id: str) -> MerchantData | None:
        merchant = await self._find_merchant(company_id)
        return _merchant_to_domain(merchant) if merchant else None

    async def lock_merchant(self, company_id: str) -> MerchantData | None:
        """Lock merchant row for update (SELECT FOR UPDATE)."""
        merchant = await self._find_merchant(company_id, for_update=True)
        return _merchant_to_domain(merchant) if merchant else None

    async def create_merchant(self, company_id: str, name: str | None = None) -> MerchantData:
        stmt = (
            pg_insert(Merchant)
            .values(company_id=company_id, name=name)
            .on_conflict_do_nothing(index_elements=[Merchant.company_id])
        )
        await self.session.execute(stmt)

        merchant = await self._find_merchant(company_id)
        if merchant is None:
            raise WriteVerificationError(f"Merchant {company_id} not found after insert")
        return _merchant_to_domain(merchant)

    async def update_subscription(self, company_id: str, update: SubscriptionUpdate) -> bool:
        merchant = await self._find_merchant(company_id)
        if merchant is None:
            return False

        merchant.subscription_status = update.status.value
        if update.plan_id is not None:
            merchant.subscription_plan_id = update.plan_id
        if update.subscription_id is not None:
            merchant.subscription_id = update.subscription_id
        if update.started_at is not None:
            merchant.subscription_started_at = update.started_at
        if update.expires_at is not None:
            merchant.subscription_expires_at = update.expires_at
        await self.session.flush()
        return True

    async def set_free_book_used(self, company_id: str, used: bool) -> None:
        stmt = (
            update(Merchant)
            .where(Merchant.company_id == company_id)
            .values(free_book_used=used, updated_at=utc_now())
        )
        await self.session.execute(stmt)

    # ========================================================================
    # Books
    # ========================================================================

    async def count_books(self, company_id: str) -> int:
        stmt = select(func.count()).select_from(Book).where(Book.company_id == company_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_book(self, book_id: UUID) -> BookData | None:
        book = await self.session.get(Book, book_id)
        return _book_to_domain(book) if book else None

    async def list_books(self, company_id: str) -> list[BookData]:
        stmt = (
            select(Book)
            .where(Book.company_id == company_id)
            .order_by(Book.display_order, Book.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [_book_to_domain(book) for book in result.scalars().all()]

    async def insert_book(self, company_id: str, draft: BookDraft, display_order: int) -> BookData:
        book = Book(
            company_id=company_id,
            title=draft.title,
            subtitle=draft.subtitle,
            description=draft.description,
            pdf_url=draft.pdf_url,
            thumbnail_url=draft.thumbnail_url,
            original_filename=draft.original_filename,
            file_size_bytes=draft.file_size_bytes,
            is_visible=True,
            is_behind_paywall=draft.is_behind_paywall,
            price=draft.price if draft.is_behind_paywall else None,
            currency=draft.currency if draft.is_behind_paywall else None,
            display_order=display_order,
        )
        self.session.add(book)
        await self.session.flush()

        verified = await self.session.get(Book, book.id)
        if verified is None:
            raise WriteVerificationError(f"Book {book.id} not found after insert")
        return _book_to_domain(verified)

    async def save_book(self, book: BookData) -> BookData:
        stored = await self.session.get(Book, book.book_id)
        if stored is None:
            raise WriteVerificationError(f"Book {book.book_id} disappeared before update")

        stored.title = book.title
        stored.subtitle = book.subtitle
        stored.description = book.description
        stored.is_visible = book.is_visible
        stored.is_behind_paywall = book.is_behind_paywall
        stored.price = book.price
        stored.currency = book.currency
        stored.display_order = book.display_order
        await self.session.flush()
        return _book_to_domain(stored)

    async def delete_book(self, book_id: UUID) -> bool:
        result = await self.session.execute(delete(Book).where(Book.id == book_id))
        return bool(result.rowcount)

    async def set_display_order(self, company_id: str, book_id: UUID, display_order: int) -> bool:
        stmt = (
            update(Book)
            .where(Book.id == book_id, Book.company_id == company_id)
            .values(display_order=display_order, updated_at=utc_now())
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    # ========================================================================
    # Access Grants
    # ========================================================================

    async def has_grant(self, book_id: UUID, user_id: str) -> bool:
        stmt = (
            select(AccessGrant.id)
            .where(AccessGrant.book_id == book_id, AccessGrant.user_id == user_id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def insert_grant_if_absent(self, intent: GrantIntent) -> bool:
        stmt = (
            pg_insert(AccessGrant)
            .values(
                book_id=intent.book_id,
                user_id=intent.user_id,
                purchased_at=utc_now(),
                price_paid=intent.price_paid,
                currency_paid=intent.currency_paid,
            )
            .on_conflict_do_nothing(constraint="uq_book_access_book_user")
            .returning(AccessGrant.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is None

    # ========================================================================
    # Transaction
    # ========================================================================

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_merchant(self, company_id: str, for_update: bool = False) -> Merchant | None:
        stmt = select(Merchant).where(Merchant.company_id == company_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


@asynccontextmanager
async def open_ledger_store() -> AsyncIterator[LedgerStore]:
    """
    Open a ledger store on its own write session.

    Used by detached webhook tasks, which must not share the request session.
    """
    async with get_write_session() as session:
        yield SqlLedgerStore(session)


def _merchant_to_domain(merchant: Merchant) -> MerchantData:
    """Convert ORM merchant to domain model."""
    return MerchantData(
        company_id=merchant.company_id,
        name=merchant.name,
        subscription_status=SubscriptionStatus(merchant.subscription_status or "free"),
        subscription_plan_id=merchant.subscription_plan_id,
        subscription_id=merchant.subscription_id,
        subscription_started_at=merchant.subscription_started_at,
        subscription_expires_at=merchant.subscription_expires_at,
        free_book_used=bool(merchant.free_book_used),
    )


def _book_to_domain(book: Book) -> BookData:
    """Convert ORM book to domain model."""
    return BookData(
        book_id=book.id,
        company_id=book.company_id,
        title=book.title,
        subtitle=book.subtitle,
        description=book.description,
        pdf_url=book.pdf_url,
        thumbnail_url=book.thumbnail_url,
        is_visible=book.is_visible,
        is_behind_paywall=book.is_behind_paywall,
        price=book.price,
        currency=book.currency,
        display_order=book.display_order,
        created_at=book.created_at,
    )
