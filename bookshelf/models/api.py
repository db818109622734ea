"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed, except the raw
webhook envelope, whose payload shape depends on the event type.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SubscriptionStatus(str, Enum):
    """Merchant subscription status enumeration."""

    FREE = "free"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CreateDenialReason(str, Enum):
    """Why a company may not create another book."""

    FREE_BOOK_ALREADY_USED = "free_book_already_used"
    FREE_BOOK_IN_USE = "free_book_in_use"
    SUBSCRIPTION_REQUIRED = "subscription_required"


class WebhookEventType(str, Enum):
    """Webhook event types the dispatcher acts on."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    MEMBERSHIP_ACTIVATED = "membership.activated"
    MEMBERSHIP_DEACTIVATED = "membership.deactivated"


# Checkout metadata marker for subscription purchases
SUBSCRIPTION_METADATA_TYPE = "subscription"


def _normalize_currency(v: str | None) -> str | None:
    if v is None:
        return None
    code = v.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {v}")
    return code


# ============================================================================
# Webhook Payload Models
# ============================================================================


class WebhookEnvelope(BaseModel):
    """Inbound webhook envelope: {type, data}."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class CheckoutMetadata(BaseModel):
    """Metadata attached at checkout-configuration time and echoed back by the provider."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str | None = None
    book_id: str | None = Field(None, alias="bookId")
    user_id: str | None = Field(None, alias="userId")
    company_id: str | None = Field(None, alias="companyId")

    @property
    def is_subscription(self) -> bool:
        return self.type == SUBSCRIPTION_METADATA_TYPE


class PaymentSucceededData(BaseModel):
    """data object of a payment.succeeded event."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    metadata: CheckoutMetadata | None = None
    total: Decimal | None = None
    currency: str | None = None


class CompanyRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class PlanRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class MembershipEventData(BaseModel):
    """data object of membership.activated / membership.deactivated events."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    company: CompanyRef | None = None
    plan: PlanRef | None = None
    metadata: CheckoutMetadata | None = None
    renewal_period_start: datetime | None = None
    renewal_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    created_at: datetime | None = None

    @property
    def company_id(self) -> str | None:
        return self.company.id if self.company else None

    @property
    def plan_id(self) -> str | None:
        return self.plan.id if self.plan else None

    @property
    def is_subscription_membership(self) -> bool:
        """Metadata absent or typed as a subscription."""
        if self.metadata is None or self.metadata.type is None:
            return True
        return self.metadata.is_subscription


# ============================================================================
# Entitlement Models
# ============================================================================


class SubscriptionSnapshotResponse(BaseModel):
    """GET /v1/companies/{company_id}/subscription response."""

    company_id: str
    has_active_subscription: bool
    free_book_available: bool
    book_count: int
    status: SubscriptionStatus
    expires_at: str | None = None


class CanCreateBookResponse(BaseModel):
    """GET /v1/companies/{company_id}/books/eligibility response."""

    can_create: bool
    reason: str | None = None
    requires_subscription: bool = False
    denial: CreateDenialReason | None = None


class BookAccessResponse(BaseModel):
    """GET /v1/books/{book_id}/access response."""

    has_access: bool


class GrantAccessRequest(BaseModel):
    """POST /v1/books/{book_id}/grants request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    price_paid: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)
    currency_paid: str | None = None

    @field_validator("currency_paid")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)


class GrantAccessResponse(BaseModel):
    """POST /v1/books/{book_id}/grants response."""

    already_had_access: bool


# ============================================================================
# Book Models
# ============================================================================


class CreateBookRequest(BaseModel):
    """POST /v1/companies/{company_id}/books request body."""

    title: str | None = Field(None, min_length=1, max_length=500)
    subtitle: str | None = Field(None, max_length=500)
    description: str | None = None
    pdf_url: str = Field(..., min_length=1)
    thumbnail_url: str | None = None
    original_filename: str | None = Field(None, max_length=255)
    file_size_bytes: int | None = Field(None, ge=0)
    is_behind_paywall: bool = False
    price: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)
    currency: str | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)

    @model_validator(mode="after")
    def default_title_to_filename(self) -> "CreateBookRequest":
        """An untitled upload is named after its file."""
        if self.title is None:
            if not self.original_filename:
                raise ValueError("title is required when original_filename is not given")
            self.title = self.original_filename
        return self


class UpdateBookRequest(BaseModel):
    """PATCH /v1/companies/{company_id}/books/{book_id} request body."""

    title: str | None = Field(None, min_length=1, max_length=500)
    subtitle: str | None = Field(None, max_length=500)
    description: str | None = None
    is_visible: bool | None = None
    is_behind_paywall: bool | None = None
    price: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)
    currency: str | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)


class BookOrderItem(BaseModel):
    """Single entry of a reorder request."""

    book_id: UUID
    display_order: int = Field(..., ge=0)


class ReorderBooksRequest(BaseModel):
    """PUT /v1/companies/{company_id}/books/order request body."""

    orders: list[BookOrderItem] = Field(..., min_length=1)


class ReorderBooksResponse(BaseModel):
    """PUT /v1/companies/{company_id}/books/order response."""

    updated: int


class BookResponse(BaseModel):
    """Book representation returned to the dashboard."""

    book_id: UUID
    company_id: str
    title: str
    subtitle: str | None = None
    description: str | None = None
    pdf_url: str
    thumbnail_url: str | None = None
    is_visible: bool
    is_behind_paywall: bool
    price: Decimal | None = None
    currency: str | None = None
    display_order: int
    created_at: str


class BookListResponse(BaseModel):
    """GET /v1/companies/{company_id}/books response."""

    books: list[BookResponse]


# ============================================================================
# Checkout Models
# ============================================================================


class OneTimeCheckoutRequest(BaseModel):
    """POST /v1/books/{book_id}/checkout request body."""

    user_id: str = Field(..., min_length=1, max_length=255)


class SubscriptionCheckoutRequest(BaseModel):
    """POST /v1/companies/{company_id}/subscription/checkout request body."""

    user_id: str = Field(..., min_length=1, max_length=255)


class CheckoutResponse(BaseModel):
    """Checkout configuration reference for the client-side checkout."""

    checkout_id: str
    plan_id: str | None = None
    purchase_url: str | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
