"""
Purchase Reconciler - payment.succeeded events to book access grants.

Subscription payments are owned by the subscription state machine (via
membership.activated) and are ignored here. Book purchases are granted through
the ledger's insert-if-absent primitive, so webhook replays and client polls
converge on a single grant.
"""

from uuid import UUID

from structlog import get_logger

from bookshelf.exceptions import MalformedEventError
from bookshelf.models.api import PaymentSucceededData, WebhookEventType
from bookshelf.models.domain import GrantIntent, GrantResult
from bookshelf.services.entitlements import EntitlementGate
from bookshelf.services.ledger import LedgerStore

logger = get_logger(__name__)


class PurchaseReconciler:
    """Applies payment.succeeded events to the access-grant ledger."""

    def __init__(self, store: LedgerStore) -> None:
        """Initialize reconciler with a ledger store."""
        self.gate = EntitlementGate(store)

    async def handle_payment_succeeded(self, payment: PaymentSucceededData) -> GrantResult | None:
        """
        Grant book access for a successful one-time payment.

        Returns:
            Grant result, or None for subscription payments

        Raises:
            MalformedEventError: bookId/userId missing or invalid
            BookNotFoundError: bookId refers to no book
        """
        metadata = payment.metadata
        if metadata is not None and metadata.is_subscription:
            logger.info(
                "subscription_payment_skipped",
                payment_id=payment.id,
                company_id=metadata.company_id,
            )
            return None

        intent = _grant_intent_from_payment(payment)
        result = await self.gate.grant_access(intent)

        logger.info(
            "book_purchase_reconciled",
            payment_id=payment.id,
            book_id=str(result.book_id),
            user_id=result.user_id,
            already_had_access=result.already_had_access,
        )
        return result


def _grant_intent_from_payment(payment: PaymentSucceededData) -> GrantIntent:
    """Extract the grant intent from payment metadata and totals."""
    event_type = WebhookEventType.PAYMENT_SUCCEEDED.value
    metadata = payment.metadata

    missing: list[str] = []
    if metadata is None or not metadata.book_id:
        missing.append("metadata.bookId")
    if metadata is None or not metadata.user_id:
        missing.append("metadata.userId")
    if missing or metadata is None:
        raise MalformedEventError(event_type, missing)

    try:
        book_id = UUID(str(metadata.book_id))
    except ValueError as exc:
        raise MalformedEventError(event_type, ["metadata.bookId (not a UUID)"]) from exc

    return GrantIntent(
        book_id=book_id,
        user_id=str(metadata.user_id),
        price_paid=payment.total,
        currency_paid=payment.currency.upper() if payment.currency else None,
    )
