"""
API Routes - FastAPI endpoints for entitlement operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bookshelf.api.dependencies import (
    get_book_service,
    get_checkout_provider,
    get_entitlement_gate,
    get_ledger_store,
    get_webhook_dispatcher,
    require_api_key,
)
from bookshelf.db.session import get_read_db
from bookshelf.exceptions import (
    BookLimitReachedError,
    BookNotFoundError,
    BookOwnershipError,
    CheckoutProviderError,
    InvalidPaywallError,
    WriteVerificationError,
)
from bookshelf.models.api import (
    BookAccessResponse,
    BookListResponse,
    BookResponse,
    CanCreateBookResponse,
    CheckoutResponse,
    CreateBookRequest,
    GrantAccessRequest,
    GrantAccessResponse,
    HealthResponse,
    OneTimeCheckoutRequest,
    ReorderBooksRequest,
    ReorderBooksResponse,
    SubscriptionCheckoutRequest,
    SubscriptionSnapshotResponse,
    UpdateBookRequest,
)
from bookshelf.models.domain import BookChanges, BookData, BookDraft, BookOrder, GrantIntent
from bookshelf.services.books import BookService
from bookshelf.services.checkout_provider import CheckoutProvider, CheckoutRef
from bookshelf.services.entitlements import EntitlementGate
from bookshelf.services.ledger import LedgerStore
from bookshelf.services.webhooks import WebhookDispatcher

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/v1/webhooks/whop", response_class=PlainTextResponse)
async def whop_webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> PlainTextResponse:
    """
    Receive a Whop webhook.

    Processing is handed off to a detached task; the response is always
    200 OK, including for unparseable bodies and unrecognized event types.
    """
    payload = await request.body()
    dispatcher.receive(payload)
    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)


# =============================================================================
# Company Entitlements
# =============================================================================


@router.get(
    "/v1/companies/{company_id}/subscription",
    response_model=SubscriptionSnapshotResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_subscription(
    company_id: str,
    gate: EntitlementGate = Depends(get_entitlement_gate),
) -> SubscriptionSnapshotResponse:
    """Get the company's subscription snapshot."""
    snapshot = await gate.subscription_snapshot(company_id)
    return SubscriptionSnapshotResponse(
        company_id=snapshot.company_id,
        has_active_subscription=snapshot.has_active_subscription,
        free_book_available=snapshot.free_book_available,
        book_count=snapshot.book_count,
        status=snapshot.status,
        expires_at=snapshot.expires_at.isoformat() if snapshot.expires_at else None,
    )


@router.get(
    "/v1/companies/{company_id}/books/eligibility",
    response_model=CanCreateBookResponse,
    dependencies=[Depends(require_api_key)],
)
async def can_create_book(
    company_id: str,
    gate: EntitlementGate = Depends(get_entitlement_gate),
) -> CanCreateBookResponse:
    """
    Check whether the company may create another book.

    Advisory only: creation re-checks under a lock.
    """
    decision = await gate.can_create_book(company_id)
    return CanCreateBookResponse(
        can_create=decision.can_create,
        reason=decision.reason,
        requires_subscription=decision.requires_subscription,
        denial=decision.denial,
    )


@router.post(
    "/v1/companies/{company_id}/subscription/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_subscription_checkout(
    company_id: str,
    request: SubscriptionCheckoutRequest,
    checkout_provider: CheckoutProvider = Depends(get_checkout_provider),
) -> CheckoutResponse:
    """Create a checkout for the merchant subscription plan."""
    try:
        ref = await checkout_provider.create_subscription_checkout(company_id, request.user_id)
    except CheckoutProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create subscription checkout",
        ) from exc

    return _checkout_response(ref)


# =============================================================================
# Books
# =============================================================================


@router.get(
    "/v1/companies/{company_id}/books",
    response_model=BookListResponse,
    dependencies=[Depends(require_api_key)],
)
async def list_books(
    company_id: str,
    service: BookService = Depends(get_book_service),
) -> BookListResponse:
    """List the company's books in display order."""
    books = await service.list_books(company_id)
    return BookListResponse(books=[_book_response(book) for book in books])


@router.post(
    "/v1/companies/{company_id}/books",
    response_model=BookResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_book(
    company_id: str,
    request: CreateBookRequest,
    service: BookService = Depends(get_book_service),
) -> BookResponse:
    """
    Create a book.

    Returns 402 with the refusal reason when the company needs a subscription.
    """
    draft = BookDraft(
        title=request.title,
        pdf_url=request.pdf_url,
        subtitle=request.subtitle,
        description=request.description,
        thumbnail_url=request.thumbnail_url,
        original_filename=request.original_filename,
        file_size_bytes=request.file_size_bytes,
        is_behind_paywall=request.is_behind_paywall,
        price=request.price,
        currency=request.currency,
    )

    try:
        book = await service.create_book(company_id, draft)
        return _book_response(book)

    except BookLimitReachedError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "reason": exc.reason,
                "requires_subscription": exc.requires_subscription,
                "denial": exc.decision.denial.value if exc.decision.denial else None,
            },
        ) from exc

    except InvalidPaywallError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=exc.message,
        ) from exc

    except CheckoutProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to retrieve company information",
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.patch(
    "/v1/companies/{company_id}/books/{book_id}",
    response_model=BookResponse,
    dependencies=[Depends(require_api_key)],
)
async def update_book(
    company_id: str,
    book_id: UUID,
    request: UpdateBookRequest,
    service: BookService = Depends(get_book_service),
) -> BookResponse:
    """Update book details and paywall configuration."""
    changes = BookChanges(
        title=request.title,
        subtitle=request.subtitle,
        description=request.description,
        is_visible=request.is_visible,
        is_behind_paywall=request.is_behind_paywall,
        price=request.price,
        currency=request.currency,
    )

    try:
        book = await service.update_book(company_id, book_id, changes)
        return _book_response(book)

    except BookNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Book not found",
        ) from exc

    except BookOwnershipError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Book belongs to another company",
        ) from exc

    except InvalidPaywallError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=exc.message,
        ) from exc


@router.delete(
    "/v1/companies/{company_id}/books/{book_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_key)],
)
async def delete_book(
    company_id: str,
    book_id: UUID,
    service: BookService = Depends(get_book_service),
) -> Response:
    """Delete a book. Deleting the last book makes the free tier available again."""
    try:
        await service.delete_book(company_id, book_id)
    except BookNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Book not found",
        ) from exc
    except BookOwnershipError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Book belongs to another company",
        ) from exc

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/v1/companies/{company_id}/books/order",
    response_model=ReorderBooksResponse,
    dependencies=[Depends(require_api_key)],
)
async def reorder_books(
    company_id: str,
    request: ReorderBooksRequest,
    service: BookService = Depends(get_book_service),
) -> ReorderBooksResponse:
    """Set display positions for the company's books."""
    orders = [
        BookOrder(book_id=item.book_id, display_order=item.display_order)
        for item in request.orders
    ]
    updated = await service.reorder_books(company_id, orders)
    return ReorderBooksResponse(updated=updated)


# =============================================================================
# Book Access
# =============================================================================


@router.get(
    "/v1/books/{book_id}/access",
    response_model=BookAccessResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_book_access(
    book_id: UUID,
    user_id: str = Query(..., min_length=1, max_length=255),
    gate: EntitlementGate = Depends(get_entitlement_gate),
) -> BookAccessResponse:
    """Check whether a user may view a book."""
    try:
        decision = await gate.check_book_access(book_id, user_id)
    except BookNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Book not found",
        ) from exc

    return BookAccessResponse(has_access=decision.has_access)


@router.post(
    "/v1/books/{book_id}/grants",
    response_model=GrantAccessResponse,
    dependencies=[Depends(require_api_key)],
)
async def grant_book_access(
    book_id: UUID,
    request: GrantAccessRequest,
    gate: EntitlementGate = Depends(get_entitlement_gate),
) -> GrantAccessResponse:
    """
    Grant a user access to a book.

    Idempotent: repeating the call reports already_had_access=true.
    """
    intent = GrantIntent(
        book_id=book_id,
        user_id=request.user_id,
        price_paid=request.price_paid,
        currency_paid=request.currency_paid,
    )

    try:
        result = await gate.grant_access(intent)
    except BookNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Book not found",
        ) from exc

    return GrantAccessResponse(already_had_access=result.already_had_access)


@router.post(
    "/v1/books/{book_id}/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_book_checkout(
    book_id: UUID,
    request: OneTimeCheckoutRequest,
    store: LedgerStore = Depends(get_ledger_store),
    checkout_provider: CheckoutProvider = Depends(get_checkout_provider),
) -> CheckoutResponse:
    """Create a one-time purchase checkout for a paywalled book."""
    book = await store.get_book(book_id)
    if book is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Book not found",
        )

    if not book.is_behind_paywall or book.price is None or not book.currency:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Book is not behind a paywall",
        )

    try:
        ref = await checkout_provider.create_one_time_checkout(
            company_id=book.company_id,
            price=book.price,
            currency=book.currency,
            book_id=book.book_id,
            user_id=request.user_id,
        )
    except CheckoutProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout",
        ) from exc

    return _checkout_response(ref)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc


def _book_response(book: BookData) -> BookResponse:
    return BookResponse(
        book_id=book.book_id,
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
        created_at=book.created_at.isoformat(),
    )


def _checkout_response(ref: CheckoutRef) -> CheckoutResponse:
    return CheckoutResponse(
        checkout_id=ref.checkout_id,
        plan_id=ref.plan_id,
        purchase_url=ref.purchase_url,
    )
