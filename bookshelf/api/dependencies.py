"""
FastAPI Dependencies - Authentication and request-scoped services.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bookshelf.config import settings
from bookshelf.db.session import get_write_db
from bookshelf.exceptions import AuthenticationError
from bookshelf.services.books import BookService
from bookshelf.services.checkout_provider import CheckoutProvider
from bookshelf.services.entitlements import EntitlementGate
from bookshelf.services.ledger import LedgerStore, SqlLedgerStore
from bookshelf.services.webhooks import WebhookDispatcher

logger = get_logger(__name__)

# ============================================================================
# API Key Authentication (dashboard and viewer backends)
# ============================================================================


def verify_api_key(presented: str | None, expected: str | None) -> None:
    """
    Check a presented API key against the configured one.

    No configured key disables the check.

    Raises:
        AuthenticationError: Key missing or wrong
    """
    if not expected:
        return
    if not presented:
        raise AuthenticationError("X-API-Key header required")
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Usage:
        @router.get("/v1/companies/{company_id}/subscription")
        async def get_subscription(
            company_id: str,
            _: None = Depends(require_api_key),
        ):
            pass

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    try:
        verify_api_key(x_api_key, settings.api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


# ============================================================================
# Request-scoped Services
# ============================================================================


async def get_ledger_store(db: AsyncSession = Depends(get_write_db)) -> LedgerStore:
    """Ledger store bound to the request's write session."""
    return SqlLedgerStore(db)


async def get_entitlement_gate(
    store: LedgerStore = Depends(get_ledger_store),
) -> EntitlementGate:
    """
    Entitlement gate for one request.

    FastAPI resolves this once per request, so the snapshot cache lives
    exactly as long as the request.
    """
    return EntitlementGate(store)


def get_checkout_provider(request: Request) -> CheckoutProvider:
    """Checkout provider created at startup."""
    provider: CheckoutProvider = request.app.state.checkout_provider
    return provider


async def get_book_service(
    store: LedgerStore = Depends(get_ledger_store),
    gate: EntitlementGate = Depends(get_entitlement_gate),
    checkout_provider: CheckoutProvider = Depends(get_checkout_provider),
) -> BookService:
    """Book service sharing the request's store and gate."""
    return BookService(store, gate, checkout_provider)


def get_webhook_dispatcher(request: Request) -> WebhookDispatcher:
    """Webhook dispatcher created at startup."""
    dispatcher: WebhookDispatcher = request.app.state.webhook_dispatcher
    return dispatcher
