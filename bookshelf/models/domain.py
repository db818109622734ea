"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from bookshelf.models.api import CreateDenialReason, SubscriptionStatus


@dataclass(frozen=True)
class MerchantData:
    """Immutable merchant snapshot."""

    company_id: str
    name: str | None
    subscription_status: SubscriptionStatus
    subscription_plan_id: str | None
    subscription_id: str | None
    subscription_started_at: datetime | None
    subscription_expires_at: datetime | None
    free_book_used: bool


@dataclass(frozen=True)
class BookData:
    """Immutable book data after persistence."""

    book_id: UUID
    company_id: str
    title: str
    subtitle: str | None
    description: str | None
    pdf_url: str
    thumbnail_url: str | None
    is_visible: bool
    is_behind_paywall: bool
    price: Decimal | None
    currency: str | None
    display_order: int
    created_at: datetime


@dataclass(frozen=True)
class BookDraft:
    """Domain model for a book before persistence - immutable intent."""

    title: str
    pdf_url: str
    subtitle: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    original_filename: str | None = None
    file_size_bytes: int | None = None
    is_behind_paywall: bool = False
    price: Decimal | None = None
    currency: str | None = None

    def __post_init__(self) -> None:
        """Validate book draft fields."""
        if not self.title:
            raise ValueError("title cannot be empty")
        if not self.pdf_url:
            raise ValueError("pdf_url cannot be empty")


@dataclass(frozen=True)
class BookChanges:
    """
    Partial book update. None means "leave unchanged".

    Empty strings for subtitle/description clear the stored value.
    """

    title: str | None = None
    subtitle: str | None = None
    description: str | None = None
    is_visible: bool | None = None
    is_behind_paywall: bool | None = None
    price: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class BookOrder:
    """New display position for one book."""

    book_id: UUID
    display_order: int


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Point-in-time entitlement view of a company."""

    company_id: str
    status: SubscriptionStatus
    expires_at: datetime | None
    free_book_used: bool
    book_count: int
    has_active_subscription: bool
    free_book_available: bool


@dataclass(frozen=True)
class CreateBookDecision:
    """Outcome of the create-book entitlement check. Advisory only."""

    can_create: bool
    reason: str | None = None
    requires_subscription: bool = False
    denial: CreateDenialReason | None = None


@dataclass(frozen=True)
class BookAccessDecision:
    """Outcome of a viewer access check."""

    book_id: UUID
    user_id: str
    has_access: bool
    is_behind_paywall: bool


@dataclass(frozen=True)
class GrantIntent:
    """Domain model for an access grant before persistence - immutable intent."""

    book_id: UUID
    user_id: str
    price_paid: Decimal | None = None
    currency_paid: str | None = None

    def __post_init__(self) -> None:
        """Validate grant fields."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.price_paid is not None and self.price_paid < 0:
            raise ValueError(f"price_paid cannot be negative: {self.price_paid}")


@dataclass(frozen=True)
class GrantResult:
    """Outcome of an idempotent grant."""

    book_id: UUID
    user_id: str
    already_had_access: bool


@dataclass(frozen=True)
class SubscriptionUpdate:
    """
    Subscription fields to write on a merchant. None means "leave unchanged".
    """

    status: SubscriptionStatus
    plan_id: str | None = None
    subscription_id: str | None = None
    started_at: datetime | None = None
    expires_at: datetime | None = None
