"""
Subscription State Machine - Membership lifecycle events to merchant state.

    free -> active -> {cancelled, expired} -> active

Events arrive at-least-once and possibly out of order; every transition is a
plain overwrite of the merchant's subscription fields, so replaying an event
converges on the same state. Transitions that refer to a superseded
membership or an older renewal period are skipped.
"""

import calendar
from datetime import UTC, datetime

from structlog import get_logger

from bookshelf.exceptions import MalformedEventError
from bookshelf.models.api import MembershipEventData, SubscriptionStatus, WebhookEventType
from bookshelf.models.domain import MerchantData, SubscriptionUpdate
from bookshelf.observability.metrics import metrics
from bookshelf.services.entitlements import ENTITLED_STATUSES
from bookshelf.services.ledger import LedgerStore

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SubscriptionStateMachine:
    """Applies membership.activated / membership.deactivated events."""

    def __init__(self, store: LedgerStore, fallback_months: int = 1) -> None:
        """
        Initialize state machine.

        Args:
            store: Ledger store for merchant records
            fallback_months: Subscription length when the provider omits the period end
        """
        self.store = store
        self.fallback_months = fallback_months

    async def handle_membership_activated(
        self, membership: MembershipEventData
    ) -> SubscriptionUpdate | None:
        """
        Activate (or renew) the company's subscription.

        Returns:
            The applied update, or None if the event was skipped

        Raises:
            MalformedEventError: Event carries no company id
        """
        event_type = WebhookEventType.MEMBERSHIP_ACTIVATED.value
        if not membership.is_subscription_membership:
            logger.info(
                "membership_not_subscription_skipped",
                event_type=event_type,
                membership_id=membership.id,
                membership_type=membership.metadata.type if membership.metadata else None,
            )
            return None

        company_id = self._require_company_id(membership, event_type)
        now = _utc_now()
        period_end = _as_utc(membership.renewal_period_end)

        started_at = _as_utc(membership.renewal_period_start or membership.created_at) or now
        expires_at = period_end or add_months(now, self.fallback_months)

        merchant = await self._ensure_merchant(company_id)
        if _is_stale_activation(merchant, membership.id, period_end, expires_at, now):
            logger.info(
                "membership_activation_stale_skipped",
                company_id=company_id,
                membership_id=membership.id,
                stored_expires_at=_iso(merchant.subscription_expires_at),
                event_period_end=_iso(period_end),
            )
            metrics.record_subscription_transition(SubscriptionStatus.ACTIVE.value, applied=False)
            return None

        update = SubscriptionUpdate(
            status=SubscriptionStatus.ACTIVE,
            plan_id=membership.plan_id,
            subscription_id=membership.id,
            started_at=started_at,
            expires_at=expires_at,
        )
        await self.store.update_subscription(company_id, update)
        await self.store.commit()

        metrics.record_subscription_transition(SubscriptionStatus.ACTIVE.value, applied=True)
        logger.info(
            "subscription_activated",
            company_id=company_id,
            subscription_id=membership.id,
            plan_id=membership.plan_id,
            expires_at=_iso(expires_at),
            expiry_from_provider=period_end is not None,
        )
        return update

    async def handle_membership_deactivated(
        self, membership: MembershipEventData
    ) -> SubscriptionUpdate | None:
        """
        Cancel or expire the company's subscription.

        cancel_at_period_end with a future period end keeps the entitlement
        until that date (status cancelled); anything else expires immediately.

        Returns:
            The applied update, or None if the event was skipped

        Raises:
            MalformedEventError: Event carries no company id
        """
        event_type = WebhookEventType.MEMBERSHIP_DEACTIVATED.value
        if not membership.is_subscription_membership:
            logger.info(
                "membership_not_subscription_skipped",
                event_type=event_type,
                membership_id=membership.id,
                membership_type=membership.metadata.type if membership.metadata else None,
            )
            return None

        company_id = self._require_company_id(membership, event_type)
        now = _utc_now()
        period_end = _as_utc(membership.renewal_period_end)

        merchant = await self._ensure_merchant(company_id)
        if _is_superseded_membership(merchant, membership.id, now):
            logger.info(
                "membership_deactivation_superseded_skipped",
                company_id=company_id,
                membership_id=membership.id,
                current_subscription_id=merchant.subscription_id,
            )
            metrics.record_subscription_transition("deactivated", applied=False)
            return None

        if membership.cancel_at_period_end and period_end is not None and period_end > now:
            update = SubscriptionUpdate(
                status=SubscriptionStatus.CANCELLED,
                expires_at=period_end,
            )
        else:
            update = SubscriptionUpdate(status=SubscriptionStatus.EXPIRED)

        await self.store.update_subscription(company_id, update)
        await self.store.commit()

        metrics.record_subscription_transition(update.status.value, applied=True)
        logger.info(
            "subscription_deactivated",
            company_id=company_id,
            subscription_id=membership.id,
            status=update.status.value,
            expires_at=_iso(update.expires_at),
        )
        return update

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _require_company_id(membership: MembershipEventData, event_type: str) -> str:
        company_id = membership.company_id
        if not company_id:
            raise MalformedEventError(event_type, ["company.id"])
        return company_id

    async def _ensure_merchant(self, company_id: str) -> MerchantData:
        merchant = await self.store.get_merchant(company_id)
        if merchant is None:
            merchant = await self.store.create_merchant(company_id)
        return merchant


def _holds_other_entitled_membership(
    merchant: MerchantData, membership_id: str | None, now: datetime
) -> bool:
    """The merchant is still entitled through a membership other than this one."""
    stored_expiry = _as_utc(merchant.subscription_expires_at)
    return (
        membership_id is not None
        and merchant.subscription_id is not None
        and merchant.subscription_id != membership_id
        and merchant.subscription_status in ENTITLED_STATUSES
        and stored_expiry is not None
        and stored_expiry > now
    )


def _is_stale_activation(
    merchant: MerchantData,
    membership_id: str | None,
    period_end: datetime | None,
    expires_at: datetime,
    now: datetime,
) -> bool:
    """
    An activation is stale when it would not extend the entitled period.

    For the recorded membership that means an older period, or a period that
    was already cancelled/expired. For another membership it means an expiry
    no later than the one the merchant already holds.
    """
    stored_expiry = _as_utc(merchant.subscription_expires_at)
    if _holds_other_entitled_membership(merchant, membership_id, now):
        return stored_expiry is not None and expires_at <= stored_expiry
    if (
        membership_id is None
        or period_end is None
        or stored_expiry is None
        or merchant.subscription_id != membership_id
    ):
        return False
    if period_end < stored_expiry:
        return True
    return merchant.subscription_status != SubscriptionStatus.ACTIVE and period_end <= stored_expiry


def _is_superseded_membership(
    merchant: MerchantData, membership_id: str | None, now: datetime
) -> bool:
    """A deactivation for another membership must not end the current entitled one."""
    return _holds_other_entitled_membership(merchant, membership_id, now)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
