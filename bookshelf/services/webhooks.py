"""
Webhook Dispatcher - Receive, classify, hand off, acknowledge.

    receive -> parse {type, data} -> classify -> submit to task pool -> 200 OK

The HTTP response never waits for processing. Each recognized event runs as a
detached task with its own ledger store; failures are logged and counted,
never re-surfaced to the provider and never retried here. The provider's own
redelivery is the only retry path, so every handler is idempotent.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from structlog import get_logger

from bookshelf.exceptions import BookNotFoundError, MalformedEventError
from bookshelf.models.api import (
    MembershipEventData,
    PaymentSucceededData,
    WebhookEnvelope,
    WebhookEventType,
)
from bookshelf.observability.logging import log_context
from bookshelf.observability.metrics import metrics
from bookshelf.observability.tracing import trace_operation
from bookshelf.services.ledger import LedgerStore, LedgerStoreFactory, open_ledger_store
from bookshelf.services.purchases import PurchaseReconciler
from bookshelf.services.subscription import SubscriptionStateMachine

logger = get_logger(__name__)

# Failures that no redelivery of the same event can repair
PERMANENT_FAILURES: tuple[type[Exception], ...] = (
    MalformedEventError,
    BookNotFoundError,
    ValidationError,
)


class WebhookTaskPool:
    """
    Bounded in-process pool for detached webhook processing.

    Tasks are tracked so they are not garbage collected mid-flight and can be
    drained on shutdown.
    """

    def __init__(self, max_concurrency: int) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, job: Callable[[], Awaitable[None]]) -> asyncio.Task[None]:
        """Schedule a job without awaiting it."""
        task = asyncio.create_task(self._run(job), name=name)
        self._tasks.add(task)
        metrics.webhook_tasks_in_flight.inc()
        task.add_done_callback(self._on_done)
        return task

    async def _run(self, job: Callable[[], Awaitable[None]]) -> None:
        async with self._semaphore:
            await job()

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        metrics.webhook_tasks_in_flight.dec()

        if task.cancelled():
            logger.warning("webhook_task_cancelled", task=task.get_name())
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "webhook_task_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight tasks, cancelling whatever outlives the timeout."""
        if not self._tasks:
            return

        logger.info("webhook_pool_draining", in_flight=len(self._tasks), timeout=timeout)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("webhook_pool_drain_cancelled", cancelled=len(pending))


class WebhookDispatcher:
    """Routes provider webhooks to the subscription and purchase paths."""

    def __init__(
        self,
        pool: WebhookTaskPool,
        store_factory: LedgerStoreFactory = open_ledger_store,
        fallback_months: int = 1,
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            pool: Task pool that runs detached processing
            store_factory: Opens a ledger store per event
            fallback_months: Subscription length when the provider omits the period end
        """
        self.pool = pool
        self.store_factory = store_factory
        self.fallback_months = fallback_months

    @staticmethod
    def classify(event_type: str) -> WebhookEventType | None:
        """Map a raw event type to a handled type (None = unrecognized)."""
        try:
            return WebhookEventType(event_type)
        except ValueError:
            return None

    def receive(self, body: bytes) -> asyncio.Task[None] | None:
        """
        Parse a raw webhook body and hand it off.

        Never raises: an unparseable body is logged and acknowledged like any
        other delivery.
        """
        try:
            envelope = WebhookEnvelope.model_validate_json(body)
        except ValidationError as exc:
            metrics.record_webhook_received("invalid")
            logger.warning(
                "webhook_envelope_invalid",
                error=str(exc),
                body_preview=body[:200].decode("utf-8", errors="replace"),
            )
            return None

        return self.dispatch(envelope)

    def dispatch(self, envelope: WebhookEnvelope) -> asyncio.Task[None] | None:
        """Schedule processing for a recognized event; returns the detached task."""
        event_type = self.classify(envelope.type)
        if event_type is None:
            metrics.record_webhook_received("unrecognized")
            logger.info("webhook_ignored", webhook_type=envelope.type)
            return None

        metrics.record_webhook_received(event_type.value)
        logger.info("webhook_received", webhook_type=event_type.value)

        data = envelope.data
        return self.pool.submit(
            f"webhook:{event_type.value}",
            lambda: self.process(event_type, data),
        )

    async def process(self, event_type: WebhookEventType, data: dict[str, Any]) -> None:
        """
        Process one event to completion, logging instead of raising.

        Permanent failures are dropped; anything else (e.g. store
        unavailable) fails this delivery attempt and waits for redelivery.
        """
        with log_context(webhook_type=event_type.value):
            with trace_operation("webhook_process", webhook_type=event_type.value):
                try:
                    async with self.store_factory() as store:
                        await self._apply(event_type, data, store)
                except PERMANENT_FAILURES as exc:
                    metrics.record_webhook_outcome(event_type.value, "dropped")
                    logger.error(
                        "webhook_event_dropped",
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    return
                except Exception as exc:
                    metrics.record_webhook_outcome(event_type.value, "failed")
                    metrics.record_error(type(exc).__name__, "webhook_process")
                    logger.error(
                        "webhook_processing_failed",
                        error=str(exc),
                        error_type=type(exc).__name__,
                        exc_info=True,
                    )
                    return

        metrics.record_webhook_outcome(event_type.value, "processed")

    async def _apply(
        self, event_type: WebhookEventType, data: dict[str, Any], store: LedgerStore
    ) -> None:
        if event_type is WebhookEventType.PAYMENT_SUCCEEDED:
            payment = PaymentSucceededData.model_validate(data)
            await PurchaseReconciler(store).handle_payment_succeeded(payment)
            return

        membership = MembershipEventData.model_validate(data)
        machine = SubscriptionStateMachine(store, fallback_months=self.fallback_months)
        if event_type is WebhookEventType.MEMBERSHIP_ACTIVATED:
            await machine.handle_membership_activated(membership)
        else:
            await machine.handle_membership_deactivated(membership)
