"""
Book Service - Book lifecycle coupled to the free-tier quota.

Create, update, delete, reorder and list a company's books. Creation is gated
by the entitlement gate; the first book created without subscription quota
consumes the free tier and deleting the last book releases it.

NO DICTIONARIES - All inputs and outputs are strongly typed domain models.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from structlog import get_logger

from bookshelf.exceptions import (
    BookLimitReachedError,
    BookNotFoundError,
    BookOwnershipError,
    InvalidPaywallError,
)
from bookshelf.models.domain import BookChanges, BookData, BookDraft, BookOrder, MerchantData
from bookshelf.services.checkout_provider import CheckoutProvider
from bookshelf.services.entitlements import EntitlementGate, decide_can_create
from bookshelf.services.ledger import LedgerStore

logger = get_logger(__name__)


class BookService:
    """Book lifecycle over a ledger store and an entitlement gate."""

    def __init__(
        self,
        store: LedgerStore,
        gate: EntitlementGate,
        checkout_provider: CheckoutProvider | None = None,
    ) -> None:
        """
        Initialize book service.

        Args:
            store: Ledger store bound to the request session
            gate: Request-scoped entitlement gate over the same store
            checkout_provider: Used to name merchants created on first book
        """
        self.store = store
        self.gate = gate
        self.checkout_provider = checkout_provider

    async def create_book(self, company_id: str, draft: BookDraft) -> BookData:
        """
        Create a book if the company is entitled to one.

        The merchant row is locked for the count-flag-insert sequence, so two
        concurrent first books for one company serialize on the database.

        Raises:
            BookLimitReachedError: Company needs a subscription for another book
            InvalidPaywallError: Paywalled book without price and currency
            CheckoutProviderError: Company lookup for a new merchant failed
        """
        _validate_paywall(draft.is_behind_paywall, draft.price, draft.currency)

        decision = await self.gate.can_create_book(company_id)
        if not decision.can_create:
            logger.info(
                "book_creation_refused",
                company_id=company_id,
                denial=decision.denial.value if decision.denial else None,
            )
            raise BookLimitReachedError(decision)

        await self._ensure_merchant(company_id)

        try:
            merchant = await self.store.lock_merchant(company_id)
            book_count = await self.store.count_books(company_id)

            # Re-decide under the lock; the advisory check above read without one
            snapshot = self.gate.snapshot_from(company_id, merchant, book_count)
            locked_decision = decide_can_create(snapshot)
            if not locked_decision.can_create:
                logger.info(
                    "book_creation_refused_under_lock",
                    company_id=company_id,
                    book_count=book_count,
                )
                raise BookLimitReachedError(locked_decision)

            consumes_free_tier = book_count == 0 and not snapshot.has_active_subscription
            if consumes_free_tier:
                await self.store.set_free_book_used(company_id, True)

            book = await self.store.insert_book(company_id, draft, display_order=book_count)
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        self.gate.invalidate(company_id)
        logger.info(
            "book_created",
            company_id=company_id,
            book_id=str(book.book_id),
            display_order=book.display_order,
            is_behind_paywall=book.is_behind_paywall,
            consumed_free_tier=consumes_free_tier,
        )
        return book

    async def update_book(self, company_id: str, book_id: UUID, changes: BookChanges) -> BookData:
        """
        Apply a partial update to a book.

        Turning the paywall off clears price and currency. Turning it on (or
        keeping it on) requires both, from the changes or the stored book.

        Raises:
            BookNotFoundError: Book doesn't exist
            BookOwnershipError: Book belongs to another company
            InvalidPaywallError: Paywall on without price and currency
        """
        book = await self._get_owned_book(company_id, book_id)

        is_behind_paywall = (
            changes.is_behind_paywall
            if changes.is_behind_paywall is not None
            else book.is_behind_paywall
        )
        if is_behind_paywall:
            price = changes.price if changes.price is not None else book.price
            currency = changes.currency if changes.currency is not None else book.currency
            _validate_paywall(True, price, currency)
        else:
            price = None
            currency = None

        updated = replace(
            book,
            title=changes.title if changes.title is not None else book.title,
            subtitle=_text_change(changes.subtitle, book.subtitle),
            description=_text_change(changes.description, book.description),
            is_visible=changes.is_visible if changes.is_visible is not None else book.is_visible,
            is_behind_paywall=is_behind_paywall,
            price=price,
            currency=currency,
        )

        try:
            saved = await self.store.save_book(updated)
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        logger.info(
            "book_updated",
            company_id=company_id,
            book_id=str(book_id),
            is_behind_paywall=saved.is_behind_paywall,
            is_visible=saved.is_visible,
        )
        return saved

    async def delete_book(self, company_id: str, book_id: UUID) -> None:
        """
        Delete a book; deleting the last one releases the free tier.

        Raises:
            BookNotFoundError: Book doesn't exist
            BookOwnershipError: Book belongs to another company
        """
        await self._get_owned_book(company_id, book_id)

        try:
            await self.store.lock_merchant(company_id)
            deleted = await self.store.delete_book(book_id)
            if not deleted:
                raise BookNotFoundError(book_id)

            remaining = await self.store.count_books(company_id)
            if remaining == 0:
                await self.store.set_free_book_used(company_id, False)
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        self.gate.invalidate(company_id)
        logger.info(
            "book_deleted",
            company_id=company_id,
            book_id=str(book_id),
            remaining_books=remaining,
            free_tier_released=remaining == 0,
        )

    async def reorder_books(self, company_id: str, orders: list[BookOrder]) -> int:
        """
        Set display positions for the company's books.

        Entries naming another company's book are ignored.

        Returns:
            Number of books reordered
        """
        updated = 0
        try:
            for order in orders:
                if await self.store.set_display_order(
                    company_id, order.book_id, order.display_order
                ):
                    updated += 1
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        if updated != len(orders):
            logger.warning(
                "book_reorder_partial",
                company_id=company_id,
                requested=len(orders),
                updated=updated,
            )
        return updated

    async def list_books(self, company_id: str) -> list[BookData]:
        """List books by display order, newest first within equal positions."""
        return await self.store.list_books(company_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _ensure_merchant(self, company_id: str) -> MerchantData:
        merchant = await self.store.get_merchant(company_id)
        if merchant is not None:
            return merchant

        name = None
        if self.checkout_provider is not None:
            info = await self.checkout_provider.retrieve_company_info(company_id)
            name = info.name

        merchant = await self.store.create_merchant(company_id, name)
        logger.info("merchant_created", company_id=company_id, name=name)
        return merchant

    async def _get_owned_book(self, company_id: str, book_id: UUID) -> BookData:
        book = await self.store.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        if book.company_id != company_id:
            raise BookOwnershipError(book_id, company_id)
        return book


def _validate_paywall(
    is_behind_paywall: bool, price: Decimal | None, currency: str | None
) -> None:
    if is_behind_paywall and (price is None or not currency):
        raise InvalidPaywallError("a paywalled book needs both price and currency")


def _text_change(new: str | None, current: str | None) -> str | None:
    """None keeps the current value; an empty string clears it."""
    if new is None:
        return current
    return new or None
