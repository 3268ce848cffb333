"""Provider notification ingestion.

Events are partitioned by remote id onto a fixed pool of asyncio workers, so
events for one subscription are handled in arrival order while different
subscriptions proceed in parallel. A failed attempt is re-enqueued after the
configured backoff; once attempts are exhausted the event lands in the
failed-event ledger, where operators can list and replay it.
"""

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from structlog.contextvars import bound_contextvars

from subsync.config import IngestionConfig
from subsync.errors import TransientGatewayError, ValidationError
from subsync.models.billing import BillingAccount, Snapshot
from subsync.models.events import EventKind, FailedEvent, ProviderEvent
from subsync.services.billing_gateway import RemoteBillingGateway
from subsync.services.reconciler import Reconciler
from subsync.services.subscription_store import AccountStore, execute_query

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EVENTS = frozenset(
    {
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_CANCELED,
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if subscription is None:
        # Newer API versions nest it under the invoice parent
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription


def routing_key(event_type: str, payload: dict[str, Any]) -> str | None:
    """Remote id that events of this type should be serialized on."""
    obj = (payload.get("data") or {}).get("object") or {}
    kind = ProviderEvent(event_id="", event_type=event_type).kind
    if kind in SUBSCRIPTION_EVENTS:
        return obj.get("id")
    if kind == EventKind.CHECKOUT_COMPLETED:
        return obj.get("subscription") or obj.get("customer")
    if kind == EventKind.INVOICE_PAID:
        return _invoice_subscription_id(obj) or obj.get("customer")
    if kind == EventKind.PAYMENT_METHOD_ATTACHED:
        return obj.get("customer")
    return None


class FailedEventStore(Protocol):
    """Operator-visible ledger of permanently failed notifications."""

    async def record(self, failed: FailedEvent) -> FailedEvent:
        """Persist a failure."""

    async def get(self, failed_id: str) -> FailedEvent | None:
        """Fetch one failure."""

    async def list_unresolved(self) -> list[FailedEvent]:
        """Failures awaiting operator attention, oldest first."""

    async def save(self, failed: FailedEvent) -> FailedEvent:
        """Update a failure (attempt count, error, resolution)."""


class InMemoryFailedEventStore:
    def __init__(self) -> None:
        self.events: dict[str, FailedEvent] = {}

    async def record(self, failed: FailedEvent) -> FailedEvent:
        self.events[failed.id] = failed.model_copy(deep=True)
        return failed

    async def get(self, failed_id: str) -> FailedEvent | None:
        failed = self.events.get(failed_id)
        return failed.model_copy(deep=True) if failed else None

    async def list_unresolved(self) -> list[FailedEvent]:
        pending = [f for f in self.events.values() if f.resolved_at is None]
        return [f.model_copy(deep=True) for f in sorted(pending, key=lambda f: f.failed_at)]

    async def save(self, failed: FailedEvent) -> FailedEvent:
        return await self.record(failed)


class SupabaseFailedEventStore:
    def __init__(self, client, table: str = "failed_provider_events"):
        self.client = client
        self.table = table

    async def record(self, failed: FailedEvent) -> FailedEvent:
        await execute_query(self.client.table(self.table).insert(failed.model_dump(mode="json")))
        return failed

    async def get(self, failed_id: str) -> FailedEvent | None:
        rows = await execute_query(
            self.client.table(self.table).select("*").eq("id", failed_id).limit(1)
        )
        return FailedEvent.model_validate(rows[0]) if rows else None

    async def list_unresolved(self) -> list[FailedEvent]:
        rows = await execute_query(
            self.client.table(self.table)
            .select("*")
            .is_("resolved_at", "null")
            .order("failed_at")
        )
        return [FailedEvent.model_validate(row) for row in rows]

    async def save(self, failed: FailedEvent) -> FailedEvent:
        payload = failed.model_dump(mode="json", exclude={"id"})
        await execute_query(self.client.table(self.table).update(payload).eq("id", failed.id))
        return failed


class ProviderEventHandler:
    """Turns provider notifications into Reconciler merges and account updates."""

    def __init__(
        self,
        reconciler: Reconciler,
        accounts: AccountStore,
        gateway: RemoteBillingGateway,
        config: IngestionConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.reconciler = reconciler
        self.accounts = accounts
        self.gateway = gateway
        self.config = config or IngestionConfig()
        self.now_provider = now_provider

    async def handle(self, event: ProviderEvent) -> None:
        kind = event.kind
        if kind in SUBSCRIPTION_EVENTS:
            await self._subscription_changed(event)
        elif kind == EventKind.CHECKOUT_COMPLETED:
            await self._checkout_completed(event)
        elif kind == EventKind.PAYMENT_METHOD_ATTACHED:
            await self._payment_method_attached(event)
        elif kind == EventKind.INVOICE_PAID:
            await self._invoice_paid(event)

    async def _snapshot(self, remote_id: str, obj: dict[str, Any]) -> Snapshot | None:
        if self.config.refetch_on_event:
            snapshot = await self.gateway.fetch_subscription(remote_id)
            if snapshot is not None:
                return snapshot
        # Deleted subscriptions may no longer be retrievable; the event copy is the last word
        return self.gateway.snapshot_from_object(obj)

    async def _subscription_changed(self, event: ProviderEvent) -> None:
        obj = event.data_object
        remote_id = obj.get("id")
        if not remote_id:
            raise ValidationError("Subscription event without a subscription id")
        snapshot = await self._snapshot(remote_id, obj)
        if snapshot is not None:
            await self.reconciler.merge(snapshot)

    async def _link_customer(self, account_id: str, customer_id: str) -> None:
        now = self.now_provider()
        account = await self.accounts.get_account(account_id)
        if account is not None and account.remote_customer_id == customer_id:
            return
        if account is None:
            account = BillingAccount(account_id=account_id, created_at=now)
        account.remote_customer_id = customer_id
        account.updated_at = now
        await self.accounts.upsert_account(account)
        logger.info("billing_customer_linked", account_id=account_id, customer_id=customer_id)

    async def _checkout_completed(self, event: ProviderEvent) -> None:
        session = event.data_object
        metadata = session.get("metadata") or {}
        account_id = (
            metadata.get("account_id")
            or metadata.get("user_id")
            or session.get("client_reference_id")
        )
        customer_id = session.get("customer")
        if account_id and customer_id:
            await self._link_customer(account_id, customer_id)

        remote_id = session.get("subscription")
        if session.get("mode") not in (None, "subscription") or not remote_id:
            logger.info("checkout_without_subscription", session_id=session.get("id"))
            return

        snapshot = await self.gateway.fetch_subscription(remote_id)
        if snapshot is None:
            # Not yet visible on the provider side; let the retry pick it up.
            raise TransientGatewayError(f"Subscription {remote_id} not found after checkout")
        if account_id and not snapshot.account_id:
            snapshot.account_id = account_id
        await self.reconciler.merge(snapshot)

    async def _payment_method_attached(self, event: ProviderEvent) -> None:
        method = event.data_object
        customer_id = method.get("customer")
        account = (
            await self.accounts.get_account_by_customer_id(customer_id) if customer_id else None
        )
        if account is None:
            logger.info("payment_method_for_unknown_customer", customer_id=customer_id)
            return

        card = method.get("card") or {}
        account.payment_method_brand = card.get("brand") or method.get("type")
        account.payment_method_last4 = card.get("last4")
        account.updated_at = self.now_provider()
        await self.accounts.upsert_account(account)
        await self.reconciler.refresh_account_cache(account.account_id)
        logger.info(
            "payment_method_updated",
            account_id=account.account_id,
            brand=account.payment_method_brand,
        )

    async def _invoice_paid(self, event: ProviderEvent) -> None:
        remote_id = _invoice_subscription_id(event.data_object)
        if not remote_id:
            logger.info("invoice_without_subscription", invoice_id=event.data_object.get("id"))
            return
        snapshot = await self.gateway.fetch_subscription(remote_id)
        if snapshot is not None:
            await self.reconciler.merge(snapshot)


class EventIngestion:
    """At-least-once delivery of provider notifications to a handler.

    Every accepted event ends either handled or in the failed-event ledger.
    Ledger writes that fail are buffered and written on the next chance, and
    ``stop`` records whatever is still queued, retrying or in flight.
    """

    def __init__(
        self,
        handler: ProviderEventHandler,
        failed_events: FailedEventStore,
        config: IngestionConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.handler = handler
        self.failed_events = failed_events
        self.config = config or IngestionConfig()
        self.now_provider = now_provider
        self._queues: list[asyncio.Queue[ProviderEvent]] = []
        self._workers: list[asyncio.Task] = []
        self._retries: dict[asyncio.Task, ProviderEvent] = {}
        self._in_flight: dict[int, ProviderEvent] = {}
        self._unrecorded: list[FailedEvent] = []
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def unrecorded(self) -> int:
        """Failed events still waiting for a successful ledger write."""
        return len(self._unrecorded)

    async def start(self) -> None:
        if self.running:
            return
        count = max(1, self.config.worker_count)
        self._queues = [asyncio.Queue() for _ in range(count)]
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"provider-events-{i}")
            for i, queue in enumerate(self._queues)
        ]
        logger.info("event_ingestion_started", workers=count)

    async def stop(self) -> None:
        """Stop the workers and record every unfinished event in the ledger."""
        self._stopping = True
        abandoned = list(self._in_flight.values())
        abandoned += [event for task, event in self._retries.items() if not task.done()]
        for queue in self._queues:
            while not queue.empty():
                abandoned.append(queue.get_nowait())
                queue.task_done()

        tasks = [*self._workers, *self._retries]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._queues = []
        self._retries.clear()
        self._in_flight.clear()

        for event in abandoned:
            if event.last_error is None:
                event.last_error = "Ingestion stopped before the event was handled"
            await self._record_failure(event)
        await self._flush_unrecorded()
        self._stopping = False
        logger.info(
            "event_ingestion_stopped", abandoned=len(abandoned), unrecorded=self.unrecorded
        )

    async def join(self) -> None:
        """Wait until queued events and scheduled retries have been handled."""
        while True:
            for queue in self._queues:
                await queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def submit(
        self, event_type: str, payload: dict[str, Any], remote_id: str | None = None
    ) -> ProviderEvent | None:
        """Accept a notification. Unknown types are acknowledged and dropped."""
        event = ProviderEvent(
            event_id=str(payload.get("id") or uuid.uuid4()),
            event_type=event_type,
            payload=payload,
            remote_id=remote_id or routing_key(event_type, payload),
        )
        if event.kind is None:
            logger.info("provider_event_ignored", event_id=event.event_id, event_type=event_type)
            return None

        logger.info(
            "provider_event_accepted",
            event_id=event.event_id,
            event_type=event_type,
            remote_id=event.remote_id,
        )
        await self._enqueue(event)
        return event

    async def _enqueue(self, event: ProviderEvent) -> None:
        if not self.running:
            await self._process_guarded(event)
            return
        index = hash(event.remote_id or event.event_id) % len(self._queues)
        await self._queues[index].put(event)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            self._in_flight[id(event)] = event
            try:
                await self._process_guarded(event)
            finally:
                self._in_flight.pop(id(event), None)
                queue.task_done()

    async def _process_guarded(self, event: ProviderEvent) -> None:
        try:
            await self.process(event)
        except Exception as e:
            logger.exception(
                "provider_event_processing_crashed",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            event.last_error = str(e) or type(e).__name__
            await self._record_failure(event)

    async def _attempt(self, event: ProviderEvent) -> Exception | None:
        event.attempts += 1
        with bound_contextvars(
            event_id=event.event_id, event_type=event.event_type, attempt=event.attempts
        ):
            try:
                await asyncio.wait_for(
                    self.handler.handle(event), timeout=self.config.attempt_timeout_seconds
                )
            except TimeoutError as e:
                logger.warning("provider_event_timed_out")
                event.last_error = type(e).__name__
                return e
            except Exception as e:
                logger.warning(
                    "provider_event_attempt_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=not isinstance(e, (ValidationError, TransientGatewayError)),
                )
                event.last_error = str(e) or type(e).__name__
                return e
        logger.info("provider_event_handled", event_id=event.event_id, attempts=event.attempts)
        return None

    async def process(self, event: ProviderEvent) -> bool:
        """Run one attempt; on failure schedule a retry or record the event as failed."""
        error = await self._attempt(event)
        if error is None:
            return True

        if (
            isinstance(error, ValidationError)
            or event.attempts >= self.config.max_attempts
            or self._stopping
        ):
            await self._record_failure(event)
            return False

        delay = self._backoff(event.attempts)
        logger.info(
            "provider_event_retry_scheduled",
            event_id=event.event_id,
            attempt=event.attempts,
            delay_seconds=delay,
        )
        task = asyncio.create_task(self._retry_later(event, delay))
        self._retries[task] = event
        task.add_done_callback(lambda t: self._retries.pop(t, None))
        return False

    def _backoff(self, attempts: int) -> float:
        schedule = self.config.backoff_seconds
        if not schedule:
            return 0.0
        return schedule[min(attempts - 1, len(schedule) - 1)]

    async def _retry_later(self, event: ProviderEvent, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._enqueue(event)

    async def _record_failure(self, event: ProviderEvent) -> None:
        """Write the event to the ledger. Never raises; unwritten entries are buffered."""
        failed = FailedEvent(
            id=str(uuid.uuid4()),
            event_id=event.event_id,
            event_type=event.event_type,
            remote_id=event.remote_id,
            payload=event.payload,
            attempts=event.attempts,
            last_error=event.last_error or "Unknown error",
            failed_at=self.now_provider(),
        )
        logger.error(
            "provider_event_failed_permanently",
            event_id=event.event_id,
            event_type=event.event_type,
            remote_id=event.remote_id,
            attempts=event.attempts,
            error=failed.last_error,
        )
        self._unrecorded.append(failed)
        await self._flush_unrecorded()

    async def _flush_unrecorded(self) -> None:
        while self._unrecorded:
            failed = self._unrecorded.pop(0)
            try:
                await self.failed_events.record(failed)
            except asyncio.CancelledError:
                self._unrecorded.insert(0, failed)
                raise
            except Exception as e:
                self._unrecorded.insert(0, failed)
                logger.error(
                    "failed_event_record_failed",
                    failed_id=failed.id,
                    event_id=failed.event_id,
                    pending=len(self._unrecorded),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return

    async def list_failed(self) -> list[FailedEvent]:
        await self._flush_unrecorded()
        return await self.failed_events.list_unresolved()

    async def replay_failed_event(self, failed_id: str) -> FailedEvent:
        """Run a failed event once more, inline. Resolves the ledger entry on success."""
        failed = await self.failed_events.get(failed_id)
        if failed is None:
            raise ValidationError(f"Unknown failed event '{failed_id}'")
        if failed.resolved_at is not None:
            return failed

        event = ProviderEvent(
            event_id=failed.event_id,
            event_type=failed.event_type,
            payload=failed.payload,
            remote_id=failed.remote_id,
            attempts=failed.attempts,
        )
        error = await self._attempt(event)
        failed.attempts = event.attempts
        if error is None:
            failed.resolved_at = self.now_provider()
            logger.info("failed_event_replayed", failed_id=failed.id, event_id=failed.event_id)
        else:
            failed.last_error = str(error) or type(error).__name__
        return await self.failed_events.save(failed)
