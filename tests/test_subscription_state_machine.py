"""
Tests for the subscription state machine.

Covers activation, renewal, cancel-at-period-end grace, expiry, and the
guards that keep replayed or out-of-order membership events from regressing
merchant state.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from bookshelf.exceptions import MalformedEventError
from bookshelf.models.api import MembershipEventData, SubscriptionStatus
from bookshelf.services.entitlements import EntitlementGate
from bookshelf.services.subscription import SubscriptionStateMachine, add_months
from conftest import COMPANY_ID, FakeLedgerStore, InMemoryLedger, make_book, make_merchant, seed

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


def membership(
    membership_id: str | None = "mem_current",
    company_id: str | None = COMPANY_ID,
    plan_id: str | None = "plan_monthly",
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    cancel_at_period_end: bool | None = None,
    metadata: dict[str, Any] | None = None,
) -> MembershipEventData:
    """Build a membership payload the way the provider delivers it."""
    data: dict[str, Any] = {"id": membership_id}
    if company_id is not None:
        data["company"] = {"id": company_id}
    if plan_id is not None:
        data["plan"] = {"id": plan_id}
    if period_start is not None:
        data["renewal_period_start"] = period_start.isoformat()
    if period_end is not None:
        data["renewal_period_end"] = period_end.isoformat()
    if cancel_at_period_end is not None:
        data["cancel_at_period_end"] = cancel_at_period_end
    if metadata is not None:
        data["metadata"] = metadata
    return MembershipEventData.model_validate(data)


@pytest.fixture
def machine(store: FakeLedgerStore) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(store)


@pytest.fixture(autouse=True)
def frozen_clock():
    """Pin both clocks so expiry comparisons are deterministic."""
    with (
        patch("bookshelf.services.subscription._utc_now", return_value=NOW),
        patch("bookshelf.services.entitlements._utc_now", return_value=NOW),
    ):
        yield


class TestAddMonths:
    """Tests for calendar month arithmetic."""

    def test_simple_month(self) -> None:
        assert add_months(datetime(2026, 3, 15, tzinfo=UTC), 1) == datetime(2026, 4, 15, tzinfo=UTC)

    def test_clamps_to_month_end(self) -> None:
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_leap_year(self) -> None:
        assert add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_year_rollover(self) -> None:
        assert add_months(datetime(2026, 12, 10, tzinfo=UTC), 2) == datetime(2027, 2, 10, tzinfo=UTC)


class TestMembershipActivated:
    """Tests for membership.activated."""

    @pytest.mark.asyncio
    async def test_activation_uses_provider_period(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(ledger, make_merchant())
        period_start = NOW - timedelta(days=1)
        period_end = NOW + timedelta(days=29)

        update = await machine.handle_membership_activated(
            membership(period_start=period_start, period_end=period_end)
        )

        assert update is not None
        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_status == SubscriptionStatus.ACTIVE
        assert stored.subscription_id == "mem_current"
        assert stored.subscription_plan_id == "plan_monthly"
        assert stored.subscription_started_at == period_start
        assert stored.subscription_expires_at == period_end

    @pytest.mark.asyncio
    async def test_activation_without_period_end_uses_fallback(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """Missing renewal_period_end falls back to now plus one month."""
        seed(ledger, make_merchant())

        await machine.handle_membership_activated(membership())

        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_expires_at == datetime(2026, 4, 15, 12, 0, 0, tzinfo=UTC)
        assert stored.subscription_started_at == NOW

    @pytest.mark.asyncio
    async def test_fallback_months_is_configurable(
        self, ledger: InMemoryLedger, store: FakeLedgerStore
    ) -> None:
        seed(ledger, make_merchant())
        machine = SubscriptionStateMachine(store, fallback_months=12)

        await machine.handle_membership_activated(membership())

        assert ledger.merchants[COMPANY_ID].subscription_expires_at == datetime(
            2027, 3, 15, 12, 0, 0, tzinfo=UTC
        )

    @pytest.mark.asyncio
    async def test_activation_creates_missing_merchant(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """A company that subscribes before creating a book still gets a record."""
        await machine.handle_membership_activated(membership(period_end=NOW + timedelta(days=30)))

        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_activation_commits(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        seed(ledger, make_merchant())

        await machine.handle_membership_activated(membership())

        assert store.commits == 1

    @pytest.mark.asyncio
    async def test_missing_company_id_is_malformed(self, machine: SubscriptionStateMachine) -> None:
        with pytest.raises(MalformedEventError) as exc_info:
            await machine.handle_membership_activated(membership(company_id=None))

        assert exc_info.value.missing_fields == ["company.id"]
        assert exc_info.value.event_type == "membership.activated"

    @pytest.mark.asyncio
    async def test_non_subscription_membership_is_skipped(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        seed(ledger, make_merchant())

        result = await machine.handle_membership_activated(
            membership(metadata={"type": "book_purchase", "bookId": "x"})
        )

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.FREE
        assert "update_subscription" not in store.calls

    @pytest.mark.asyncio
    async def test_subscription_metadata_is_applied(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(ledger, make_merchant())

        result = await machine.handle_membership_activated(
            membership(metadata={"type": "subscription", "companyId": COMPANY_ID})
        )

        assert result is not None

    @pytest.mark.asyncio
    async def test_replay_converges(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """Applying the same activation twice leaves the same state."""
        seed(ledger, make_merchant())
        event = membership(period_end=NOW + timedelta(days=30))

        await machine.handle_membership_activated(event)
        first = ledger.merchants[COMPANY_ID]
        await machine.handle_membership_activated(event)

        assert ledger.merchants[COMPANY_ID] == first

    @pytest.mark.asyncio
    async def test_older_period_for_same_membership_is_stale(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """A late activation for an earlier period does not shorten the subscription."""
        current_end = NOW + timedelta(days=60)
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=current_end,
            ),
        )

        result = await machine.handle_membership_activated(
            membership(period_end=NOW + timedelta(days=30))
        )

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_expires_at == current_end

    @pytest.mark.asyncio
    async def test_activation_after_cancellation_of_same_period_is_stale(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """Activation delivered after the deactivation of the same period."""
        period_end = NOW + timedelta(days=10)
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.CANCELLED,
                subscription_id="mem_current",
                expires_at=period_end,
            ),
        )

        result = await machine.handle_membership_activated(membership(period_end=period_end))

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_new_membership_reactivates_expired_merchant(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.EXPIRED,
                subscription_id="mem_old",
                expires_at=NOW - timedelta(days=3),
            ),
        )

        result = await machine.handle_membership_activated(
            membership(membership_id="mem_new", period_end=NOW + timedelta(days=30))
        )

        assert result is not None
        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_status == SubscriptionStatus.ACTIVE
        assert stored.subscription_id == "mem_new"


    @pytest.mark.asyncio
    async def test_late_activation_of_older_membership_is_stale(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        """A redelivered activation of a replaced membership keeps the current one."""
        current_end = NOW + timedelta(days=30)
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_new",
                expires_at=current_end,
            ),
        )

        result = await machine.handle_membership_activated(
            membership(membership_id="mem_old", period_end=NOW - timedelta(days=5))
        )

        assert result is None
        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_id == "mem_new"
        assert stored.subscription_expires_at == current_end
        snapshot = await EntitlementGate(store).subscription_snapshot(COMPANY_ID)
        assert snapshot.has_active_subscription is True

    @pytest.mark.asyncio
    async def test_other_membership_extending_the_period_is_applied(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.CANCELLED,
                subscription_id="mem_old",
                expires_at=NOW + timedelta(days=5),
            ),
        )
        new_end = NOW + timedelta(days=365)

        result = await machine.handle_membership_activated(
            membership(membership_id="mem_new", period_end=new_end)
        )

        assert result is not None
        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_status == SubscriptionStatus.ACTIVE
        assert stored.subscription_id == "mem_new"
        assert stored.subscription_expires_at == new_end


class TestMembershipDeactivated:
    """Tests for membership.deactivated."""

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_keeps_grace_period(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        """Cancelled with a future end stays entitled until that end."""
        period_end = NOW + timedelta(days=10)
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=period_end,
                free_book_used=True,
            ),
            [make_book(), make_book(title="Second")],
        )

        update = await machine.handle_membership_deactivated(
            membership(period_end=period_end, cancel_at_period_end=True)
        )

        assert update is not None
        assert update.status == SubscriptionStatus.CANCELLED
        stored = ledger.merchants[COMPANY_ID]
        assert stored.subscription_status == SubscriptionStatus.CANCELLED
        assert stored.subscription_expires_at == period_end

        decision = await EntitlementGate(store).can_create_book(COMPANY_ID)
        assert decision.can_create is True

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_with_past_end_expires(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=NOW + timedelta(days=1),
            ),
        )

        update = await machine.handle_membership_deactivated(
            membership(period_end=NOW - timedelta(minutes=1), cancel_at_period_end=True)
        )

        assert update is not None
        assert update.status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_immediate_deactivation_expires(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=NOW + timedelta(days=10),
                free_book_used=True,
            ),
            [make_book()],
        )

        await machine.handle_membership_deactivated(membership(cancel_at_period_end=False))

        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.EXPIRED
        snapshot = await EntitlementGate(store).subscription_snapshot(COMPANY_ID)
        assert snapshot.has_active_subscription is False

    @pytest.mark.asyncio
    async def test_deactivation_of_superseded_membership_is_skipped(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        """An old membership ending must not expire the current one."""
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=NOW + timedelta(days=30),
            ),
        )

        result = await machine.handle_membership_deactivated(membership(membership_id="mem_old"))

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_old_membership_ending_keeps_cancelled_grace_period(
        self, ledger: InMemoryLedger, store: FakeLedgerStore, machine: SubscriptionStateMachine
    ) -> None:
        """The current membership's paid period survives an older membership's expiry."""
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.CANCELLED,
                subscription_id="mem_current",
                expires_at=NOW + timedelta(days=20),
            ),
        )

        result = await machine.handle_membership_deactivated(
            membership(membership_id="mem_old", cancel_at_period_end=False)
        )

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.CANCELLED
        snapshot = await EntitlementGate(store).subscription_snapshot(COMPANY_ID)
        assert snapshot.has_active_subscription is True

    @pytest.mark.asyncio
    async def test_old_membership_ending_after_current_lapsed_expires(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.CANCELLED,
                subscription_id="mem_current",
                expires_at=NOW - timedelta(days=1),
            ),
        )

        result = await machine.handle_membership_deactivated(membership(membership_id="mem_old"))

        assert result is not None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_deactivation_creates_missing_merchant(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        await machine.handle_membership_deactivated(membership())

        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_missing_company_id_is_malformed(self, machine: SubscriptionStateMachine) -> None:
        with pytest.raises(MalformedEventError):
            await machine.handle_membership_deactivated(membership(company_id=None))

    @pytest.mark.asyncio
    async def test_non_subscription_membership_is_skipped(
        self, ledger: InMemoryLedger, machine: SubscriptionStateMachine
    ) -> None:
        seed(
            ledger,
            make_merchant(
                status=SubscriptionStatus.ACTIVE,
                subscription_id="mem_current",
                expires_at=NOW + timedelta(days=30),
            ),
        )

        result = await machine.handle_membership_deactivated(
            membership(metadata={"type": "book_purchase"})
        )

        assert result is None
        assert ledger.merchants[COMPANY_ID].subscription_status == SubscriptionStatus.ACTIVE
