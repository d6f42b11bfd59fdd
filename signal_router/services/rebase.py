# signal_router/services/rebase.py
"""TP/SL rebase engine.

Broker fills are not immediately visible, so orders that want their exits
corrected are queued here and handled by a single background worker:

    queued -> polling -> corrected | partial | skipped | exhausted | failed

The worker drains the queue one item at a time to bound the request rate to
the broker. A failing item never stops the queue; its outcome is recorded as
a ``RebaseResult`` and the worker moves on.
"""
import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Deque, Iterable, List, Optional, Set

from signal_router.config import settings
from signal_router.schemas.account import AccountConfig
from signal_router.services.broker import (
    BrokerBusinessError,
    BrokerClient,
    BrokerError,
    BrokerNetworkError,
    NotReady,
    OrderDetails,
    retry_on_network_error,
)
from signal_router.services.order_store import OrderStore
from signal_router.services.pricing import compute_target_and_stop, price_deviation, round_to_tick

logger = logging.getLogger(__name__)

# terminal broker status -> placed_orders status
ORDER_STATUS_FOR_BROKER = {"REJECTED": "failed", "CANCELLED": "cancelled", "EXPIRED": "cancelled"}


class RebaseStatus(str, Enum):
    CORRECTED = "corrected"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass
class RebaseQueueItem:
    order_id: str
    account: AccountConfig
    original_alert_price: float
    signal: str
    original_target_price: Optional[float] = None
    original_stop_loss_price: Optional[float] = None
    added_at: datetime = field(default_factory=datetime.utcnow)
    attempts: int = 0
    max_attempts: Optional[int] = None
    last_attempt_at: Optional[datetime] = None

    @property
    def account_id(self) -> int:
        return self.account.account_id

    @property
    def client_id(self) -> str:
        return self.account.client_id


@dataclass
class RebaseResult:
    order_id: str
    account_id: int
    client_id: str
    status: RebaseStatus
    message: str
    attempts: int = 0
    actual_entry_price: Optional[float] = None
    original_tp: Optional[float] = None
    original_sl: Optional[float] = None
    new_tp: Optional[float] = None
    new_sl: Optional[float] = None
    target_updated: Optional[bool] = None
    stop_loss_updated: Optional[bool] = None
    broker_status: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def success(self) -> bool:
        return self.status in (RebaseStatus.CORRECTED, RebaseStatus.SKIPPED)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["success"] = self.success
        data["timestamp"] = self.timestamp.isoformat()
        return data


class RebaseEngine:
    def __init__(
        self,
        broker_factory: Callable[[AccountConfig], BrokerClient],
        *,
        initial_delay: Optional[float] = None,
        attempt_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        network_backoff: Optional[Iterable[float]] = None,
        results_cap: Optional[int] = None,
        fallback_to_alert_price: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_result: Optional[Callable[[RebaseResult], Awaitable[None]]] = None,
        order_store: Optional[OrderStore] = None,
    ):
        self._broker_factory = broker_factory
        self.initial_delay = settings.REBASE_INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        self.attempt_delay = settings.REBASE_ATTEMPT_DELAY_SECONDS if attempt_delay is None else attempt_delay
        self.max_attempts = max_attempts or settings.REBASE_MAX_ATTEMPTS
        self.network_backoff = tuple(
            settings.REBASE_NETWORK_BACKOFF_SECONDS if network_backoff is None else network_backoff
        )
        self.fallback_to_alert_price = (
            settings.REBASE_FALLBACK_TO_ALERT_PRICE if fallback_to_alert_price is None else fallback_to_alert_price
        )
        self._sleep = sleep
        self._on_result = on_result
        self._order_store = order_store

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued_ids: Set[str] = set()
        self._corrected_ids: Set[str] = set()
        self._results: Deque[RebaseResult] = deque(maxlen=results_cap or settings.REBASE_RESULTS_CAP)
        self._processing = False
        self._worker: Optional[asyncio.Task] = None

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="rebase-engine")
            logger.info("Rebase engine started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Rebase engine stopped (%d items abandoned)", self._queue.qsize())

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._queue.join(), timeout)

    # -- queue ------------------------------------------------------------

    def enqueue(self, item: RebaseQueueItem) -> bool:
        """Queue an order for correction. Returns False when it is ignored."""
        if not item.account.rebase_tp_and_sl:
            logger.info("Rebase disabled for client %s; order %s not queued", item.client_id, item.order_id)
            return False
        if item.order_id in self._queued_ids or item.order_id in self._corrected_ids:
            logger.info("Order %s already queued or rebased; skipping", item.order_id)
            return False
        self._queued_ids.add(item.order_id)
        self._queue.put_nowait(item)
        logger.info("Order %s queued for rebase (%d in queue)", item.order_id, self._queue.qsize())
        return True

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            self._queued_ids.discard(item.order_id)
            self._processing = True
            try:
                try:
                    result = await self.process_item(item)
                except Exception as e:
                    logger.exception("Unexpected error rebasing order %s", item.order_id)
                    result = self._result(item, RebaseStatus.FAILED, f"unexpected error: {e}")
                await self._record(result)
            finally:
                self._processing = False
                self._queue.task_done()

    async def _record(self, result: RebaseResult) -> None:
        self._results.append(result)
        if result.status == RebaseStatus.CORRECTED:
            self._corrected_ids.add(result.order_id)
        logger.info("Rebase %s for order %s: %s", result.status.value, result.order_id, result.message)
        self._update_order_status(result)
        if self._on_result is not None:
            try:
                await self._on_result(result)
            except Exception:
                logger.exception("Rebase result callback failed")

    def _update_order_status(self, result: RebaseResult) -> None:
        order_status = ORDER_STATUS_FOR_BROKER.get(result.broker_status or "")
        if order_status is None or self._order_store is None:
            return
        try:
            self._order_store.update_status(result.order_id, order_status, error=result.message)
        except Exception:
            logger.exception("Failed to mark order %s as %s", result.order_id, order_status)

    # -- state machine ----------------------------------------------------

    def _result(self, item: RebaseQueueItem, status: RebaseStatus, message: str, **extra) -> RebaseResult:
        return RebaseResult(
            order_id=item.order_id,
            account_id=item.account_id,
            client_id=item.client_id,
            status=status,
            message=message,
            attempts=item.attempts,
            original_tp=item.original_target_price,
            original_sl=item.original_stop_loss_price,
            **extra,
        )

    async def _poll(self, broker: BrokerClient, item: RebaseQueueItem):
        try:
            return await retry_on_network_error(
                lambda: broker.get_order_details(item.order_id), self.network_backoff, self._sleep
            )
        except BrokerNetworkError as e:
            return NotReady(f"network error: {e}")
        except BrokerBusinessError as e:
            return NotReady(f"broker error: {e}")

    async def _push(self, call) -> Optional[str]:
        """Run an update call; return None on success or the error text."""
        try:
            await retry_on_network_error(call, self.network_backoff, self._sleep)
        except BrokerError as e:
            return str(e)
        return None

    async def process_item(self, item: RebaseQueueItem) -> RebaseResult:
        account = item.account
        broker = self._broker_factory(account)
        if item.max_attempts is None:
            item.max_attempts = self.max_attempts

        if self.initial_delay > 0:
            await self._sleep(self.initial_delay)

        entry_price = None
        while item.attempts < item.max_attempts:
            item.attempts += 1
            item.last_attempt_at = datetime.utcnow()
            polled = await self._poll(broker, item)
            if isinstance(polled, OrderDetails):
                entry_price = polled.entry_price
                break

            logger.info("Order %s not ready (attempt %d/%d): %s",
                        item.order_id, item.attempts, item.max_attempts, polled.reason)
            if polled.terminal:
                return self._result(item, RebaseStatus.FAILED, f"{polled.reason}; rebase abandoned",
                                    broker_status=polled.status)
            if item.attempts < item.max_attempts:
                await self._sleep(self.attempt_delay)

        message_prefix = ""
        if entry_price is None:
            if not self.fallback_to_alert_price:
                return self._result(
                    item, RebaseStatus.EXHAUSTED,
                    f"no valid entry price after {item.attempts} attempts",
                )
            logger.warning("Order %s: falling back to alert price %.2f", item.order_id, item.original_alert_price)
            entry_price = item.original_alert_price
            message_prefix = "alert price used as entry; "

        deviation = price_deviation(entry_price, item.original_alert_price)
        if deviation < account.rebase_threshold_percentage:
            return self._result(
                item, RebaseStatus.SKIPPED,
                f"{message_prefix}deviation {deviation:.4%} below threshold "
                f"{account.rebase_threshold_percentage:.4%}",
                actual_entry_price=entry_price,
            )

        target, stop_loss = compute_target_and_stop(
            entry_price, item.signal, account.target_price_percentage, account.stop_loss_percentage
        )
        new_tp = round_to_tick(target)
        new_sl = round_to_tick(stop_loss)
        logger.info("Order %s: entry %.2f vs alert %.2f (%.4f%%), TP -> %.2f, SL -> %.2f",
                    item.order_id, entry_price, item.original_alert_price, deviation * 100, new_tp, new_sl)

        tp_error = await self._push(
            lambda: broker.update_target_price(item.order_id, account.client_id, new_tp)
        )
        sl_error = await self._push(
            lambda: broker.update_stop_loss(item.order_id, account.client_id, new_sl, account.trailing_jump)
        )

        if tp_error is None and sl_error is None:
            status, message = RebaseStatus.CORRECTED, "TP/SL rebased on actual entry price"
        elif tp_error is None or sl_error is None:
            failed = f"target update failed: {tp_error}" if tp_error else f"stop-loss update failed: {sl_error}"
            status, message = RebaseStatus.PARTIAL, f"partial rebase, {failed}"
        else:
            status = RebaseStatus.FAILED
            message = f"target update failed: {tp_error}; stop-loss update failed: {sl_error}"

        return self._result(
            item, status, message_prefix + message,
            actual_entry_price=entry_price,
            new_tp=new_tp,
            new_sl=new_sl,
            target_updated=tp_error is None,
            stop_loss_updated=sl_error is None,
        )

    # -- observability ----------------------------------------------------

    def get_queue_status(self) -> dict:
        return {
            "queue_length": self._queue.qsize(),
            "is_processing": self._processing,
            "result_count": len(self._results),
        }

    def get_results(self) -> List[RebaseResult]:
        return list(self._results)

    def get_results_for_order(self, order_id: str) -> List[RebaseResult]:
        return [r for r in list(self._results) if r.order_id == order_id]

    def clear_results(self) -> int:
        count = len(self._results)
        self._results.clear()
        return count
