"""
Entitlement Gate - Decides who may create books and who may view them.

Combines the free-tier quota, merchant subscription state and per-book access
grants. Reads are lock-free; snapshots are memoized for the lifetime of one
gate instance, which is constructed per request.

NO DICTIONARIES - All decisions are strongly typed domain models.
"""

import time
from datetime import UTC, datetime
from uuid import UUID

from structlog import get_logger

from bookshelf.exceptions import BookNotFoundError
from bookshelf.models.api import CreateDenialReason, SubscriptionStatus
from bookshelf.models.domain import (
    BookAccessDecision,
    CreateBookDecision,
    GrantIntent,
    GrantResult,
    MerchantData,
    SubscriptionSnapshot,
)
from bookshelf.observability.metrics import metrics
from bookshelf.services.ledger import LedgerStore

logger = get_logger(__name__)

FREE_BOOK_ALREADY_USED_MESSAGE = (
    "Your free book has already been used. Please subscribe to add more books."
)
FREE_BOOK_IN_USE_MESSAGE = "You've used your free book. Please subscribe to add more books."
SUBSCRIPTION_REQUIRED_MESSAGE = "You need an active subscription to add more books."

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED})


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def build_snapshot(
    company_id: str,
    merchant: MerchantData | None,
    book_count: int,
    now: datetime,
) -> SubscriptionSnapshot:
    """
    Compute the entitlement snapshot for a company.

    A company without a merchant row is a fresh free-tier company.
    """
    status = merchant.subscription_status if merchant else SubscriptionStatus.FREE
    expires_at = _as_utc(merchant.subscription_expires_at) if merchant else None
    free_book_used = merchant.free_book_used if merchant else False

    # Cancelled-at-period-end subscriptions stay entitled until expiry
    has_active_subscription = (
        status in ENTITLED_STATUSES and expires_at is not None and expires_at > now
    )

    return SubscriptionSnapshot(
        company_id=company_id,
        status=status,
        expires_at=expires_at,
        free_book_used=free_book_used,
        book_count=book_count,
        has_active_subscription=has_active_subscription,
        free_book_available=not free_book_used and book_count == 0,
    )


def decide_can_create(snapshot: SubscriptionSnapshot) -> CreateBookDecision:
    """Turn a snapshot into a create-book decision with a UI-facing reason."""
    if snapshot.free_book_available or snapshot.has_active_subscription:
        return CreateBookDecision(can_create=True)

    if snapshot.book_count == 0:
        return CreateBookDecision(
            can_create=False,
            reason=FREE_BOOK_ALREADY_USED_MESSAGE,
            requires_subscription=True,
            denial=CreateDenialReason.FREE_BOOK_ALREADY_USED,
        )

    if snapshot.free_book_used:
        return CreateBookDecision(
            can_create=False,
            reason=FREE_BOOK_IN_USE_MESSAGE,
            requires_subscription=True,
            denial=CreateDenialReason.FREE_BOOK_IN_USE,
        )

    # Books created under a subscription that has since lapsed
    return CreateBookDecision(
        can_create=False,
        reason=SUBSCRIPTION_REQUIRED_MESSAGE,
        requires_subscription=True,
        denial=CreateDenialReason.SUBSCRIPTION_REQUIRED,
    )


class EntitlementGate:
    """
    Entitlement gate over a ledger store.

    Construct one per request: the snapshot cache has no cross-request
    lifetime because subscription state changes asynchronously.
    """

    def __init__(self, store: LedgerStore) -> None:
        """Initialize gate with a ledger store."""
        self.store = store
        self._snapshots: dict[str, SubscriptionSnapshot] = {}

    async def subscription_snapshot(self, company_id: str) -> SubscriptionSnapshot:
        """Get the company's entitlement snapshot (memoized for this gate)."""
        cached = self._snapshots.get(company_id)
        if cached is not None:
            return cached

        merchant = await self.store.get_merchant(company_id)
        book_count = await self.store.count_books(company_id)
        snapshot = build_snapshot(company_id, merchant, book_count, _utc_now())

        self._snapshots[company_id] = snapshot
        return snapshot

    def snapshot_from(
        self, company_id: str, merchant: MerchantData | None, book_count: int
    ) -> SubscriptionSnapshot:
        """Build an uncached snapshot from rows the caller read itself (e.g. under a lock)."""
        return build_snapshot(company_id, merchant, book_count, _utc_now())

    def invalidate(self, company_id: str) -> None:
        """Drop the memoized snapshot after this request changed the company."""
        self._snapshots.pop(company_id, None)

    async def can_create_book(self, company_id: str) -> CreateBookDecision:
        """
        Check whether the company may create another book.

        A negative result is a normal outcome, not an error.
        """
        start = time.perf_counter()
        snapshot = await self.subscription_snapshot(company_id)
        decision = decide_can_create(snapshot)

        metrics.record_create_check(
            decision.can_create,
            decision.denial.value if decision.denial else None,
            time.perf_counter() - start,
        )
        logger.info(
            "create_book_eligibility_checked",
            company_id=company_id,
            can_create=decision.can_create,
            denial=decision.denial.value if decision.denial else None,
            book_count=snapshot.book_count,
            subscription_status=snapshot.status.value,
        )
        return decision

    async def check_book_access(self, book_id: UUID, user_id: str) -> BookAccessDecision:
        """
        Check whether a user may view a book.

        Raises:
            BookNotFoundError: Book doesn't exist
        """
        book = await self.store.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)

        if not book.is_behind_paywall:
            has_access = True
        else:
            has_access = await self.store.has_grant(book_id, user_id)

        metrics.record_access_check(book.is_behind_paywall, has_access)
        return BookAccessDecision(
            book_id=book_id,
            user_id=user_id,
            has_access=has_access,
            is_behind_paywall=book.is_behind_paywall,
        )

    async def grant_access(self, intent: GrantIntent) -> GrantResult:
        """
        Grant a user access to a book, idempotently.

        Safe to call from webhook replays and client-side purchase polls alike:
        the first call inserts, every later call reports already_had_access.

        Raises:
            BookNotFoundError: Book doesn't exist
        """
        book = await self.store.get_book(intent.book_id)
        if book is None:
            raise BookNotFoundError(intent.book_id)

        already_had_access = await self.store.insert_grant_if_absent(intent)
        await self.store.commit()

        metrics.record_grant(already_had_access)
        logger.info(
            "book_access_granted",
            book_id=str(intent.book_id),
            user_id=intent.user_id,
            already_had_access=already_had_access,
            price_paid=str(intent.price_paid) if intent.price_paid is not None else None,
            currency_paid=intent.currency_paid,
        )

        return GrantResult(
            book_id=intent.book_id,
            user_id=intent.user_id,
            already_had_access=already_had_access,
        )
