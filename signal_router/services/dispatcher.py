# signal_router/services/dispatcher.py
"""Multi-account order placement for a single alert.

Each active account is handled by its own task. A rejection or broker failure
for one account is reported in that account's ``PlacementOutcome`` and never
affects the others, so a mixed result is the normal case.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from signal_router.schemas.account import AccountConfig
from signal_router.schemas.alert import TradingViewAlert
from signal_router.services.broker import (
    BrokerBusinessError,
    BrokerClient,
    BrokerNetworkError,
    OrderRequest,
)
from signal_router.services.instruments import InstrumentResolver
from signal_router.services.order_store import OrderRecord, OrderStore
from signal_router.services.pricing import apply_limit_buffer
from signal_router.services.rebase import RebaseEngine, RebaseQueueItem
from signal_router.services.sizing import Rejection, compute_position
from signal_router.services.ticker_guard import TickerGuard

logger = logging.getLogger(__name__)

PLACED = "placed"
REJECTED = "rejected"
FAILED = "failed"

REJECTED_BY_POLICY = "RejectedByPolicy"
BROKER_BUSINESS_ERROR = "BrokerBusinessError"
NETWORK_TRANSIENT = "NetworkTransient"
INTERNAL = "Internal"


@dataclass
class OrderIntent:
    account_id: int
    ticker: str
    signal: str
    security_id: str
    alert_price: float
    quantity: int
    order_value: float
    order_type: str
    target_price: float
    stop_loss_price: float
    execution_price: Optional[float] = None
    trailing_jump: Optional[float] = None


@dataclass
class PlacementOutcome:
    account_id: int
    client_id: str
    status: str
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    rebase_queued: bool = False
    intent: Optional[OrderIntent] = None

    @property
    def success(self) -> bool:
        return self.status == PLACED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["success"] = self.success
        return data


def summarize_outcomes(outcomes: List[PlacementOutcome]) -> dict:
    return {
        "total_accounts": len(outcomes),
        "successful": sum(1 for o in outcomes if o.status == PLACED),
        "rejected": sum(1 for o in outcomes if o.status == REJECTED),
        "failed": sum(1 for o in outcomes if o.status == FAILED),
        "order_ids": [o.order_id for o in outcomes if o.order_id],
    }


class OrderDispatcher:
    def __init__(
        self,
        broker_factory: Callable[[AccountConfig], BrokerClient],
        resolver: InstrumentResolver,
        guard: TickerGuard,
        order_store: OrderStore,
        rebase_engine: Optional[RebaseEngine] = None,
    ):
        self._broker_factory = broker_factory
        self._resolver = resolver
        self._guard = guard
        self._order_store = order_store
        self._rebase_engine = rebase_engine
        self._locks: Dict[Tuple[str, int], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, int], int] = {}

    @asynccontextmanager
    async def _ticker_lock(self, ticker: str, account_id: int):
        """Serialise placements per (ticker, account); the lock is dropped once unused."""
        key = (ticker.upper(), account_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def place_orders_for_alert(self, alert: TradingViewAlert,
                                     accounts: Iterable[AccountConfig]) -> List[PlacementOutcome]:
        if alert.signal == "HOLD":
            logger.info("HOLD signal for %s; no orders placed", alert.ticker)
            return []

        active = [a for a in accounts if a.is_active]
        if not active:
            logger.warning("No active accounts configured; alert for %s dropped", alert.ticker)
            return []

        security_id = self._resolver.resolve_security_id(alert.ticker)
        if not security_id:
            logger.error("No security id found for ticker %s", alert.ticker)
            return [
                PlacementOutcome(
                    account_id=a.account_id,
                    client_id=a.client_id,
                    status=REJECTED,
                    error_kind=REJECTED_BY_POLICY,
                    reason=f"InstrumentNotFound: no security id for {alert.ticker}",
                )
                for a in active
            ]

        logger.info("Placing %s %s @ %.2f across %d account(s)",
                    alert.signal, alert.ticker, alert.price, len(active))
        results = await asyncio.gather(
            *(self._place_for_account(alert, account, security_id) for account in active),
            return_exceptions=True,
        )

        outcomes = []
        for account, result in zip(active, results):
            if isinstance(result, BaseException):
                logger.error("Unexpected error placing order for account %s: %r", account.account_id, result)
                result = PlacementOutcome(
                    account_id=account.account_id,
                    client_id=account.client_id,
                    status=FAILED,
                    error_kind=INTERNAL,
                    reason=f"unexpected error: {result}",
                )
            outcomes.append(result)

        summary = summarize_outcomes(outcomes)
        logger.info("Alert %s %s: %d placed, %d rejected, %d failed", alert.signal, alert.ticker,
                    summary["successful"], summary["rejected"], summary["failed"])
        return outcomes

    async def _place_for_account(self, alert: TradingViewAlert, account: AccountConfig,
                                 security_id: str) -> PlacementOutcome:
        def outcome(status, **kwargs):
            return PlacementOutcome(account_id=account.account_id, client_id=account.client_id,
                                    status=status, **kwargs)

        async with self._ticker_lock(alert.ticker, account.account_id):
            if not account.allow_duplicate_tickers and self._guard.has_ordered_today(alert.ticker, account.account_id):
                logger.info("Duplicate %s blocked for account %s", alert.ticker, account.account_id)
                return outcome(REJECTED, error_kind=REJECTED_BY_POLICY,
                               reason=f"DuplicateOrderBlocked: {alert.ticker} already ordered today")

            sized = compute_position(alert.price, account, alert.signal)
            if isinstance(sized, Rejection):
                logger.info("Account %s rejected %s: %s", account.account_id, alert.ticker, sized.reason)
                return outcome(REJECTED, error_kind=REJECTED_BY_POLICY, reason=sized.reason)

            intent = OrderIntent(
                account_id=account.account_id,
                ticker=alert.ticker,
                signal=alert.signal,
                security_id=security_id,
                alert_price=alert.price,
                quantity=sized.quantity,
                order_value=sized.order_value,
                order_type=account.order_type,
                target_price=sized.target_price,
                stop_loss_price=sized.stop_loss_price,
                trailing_jump=account.trailing_jump,
            )
            if account.order_type == "LIMIT":
                intent.execution_price = apply_limit_buffer(alert.price, alert.signal,
                                                            account.limit_buffer_percentage)

            request = OrderRequest(
                client_id=account.client_id,
                transaction_type=alert.signal,
                security_id=security_id,
                quantity=intent.quantity,
                order_type=intent.order_type,
                price=intent.execution_price or 0.0,
                target_price=intent.target_price,
                stop_loss_price=intent.stop_loss_price,
                trailing_jump=intent.trailing_jump,
            )

            broker = self._broker_factory(account)
            try:
                ack = await broker.place_order(request)
            except BrokerBusinessError as e:
                logger.error("Broker refused order for account %s: %s", account.account_id, e)
                return outcome(FAILED, error_kind=BROKER_BUSINESS_ERROR, reason=str(e),
                               correlation_id=request.correlation_id, intent=intent)
            except BrokerNetworkError as e:
                logger.error("Network error placing order for account %s: %s", account.account_id, e)
                return outcome(FAILED, error_kind=NETWORK_TRANSIENT, reason=str(e),
                               correlation_id=request.correlation_id, intent=intent)

            logger.info("Order %s placed for account %s: %s %d x %s",
                        ack.order_id, account.account_id, alert.signal, intent.quantity, alert.ticker)
            self._record_placement(alert, account, intent, ack.order_id, request.correlation_id)
            queued = self._queue_rebase(alert, account, intent, ack.order_id)
            return outcome(PLACED, order_id=ack.order_id, correlation_id=request.correlation_id,
                           rebase_queued=queued, intent=intent)

    def _record_placement(self, alert, account, intent, order_id, correlation_id) -> None:
        # the order is live at the broker; bookkeeping failures are logged, not reported as placement failures
        try:
            self._guard.record_order(alert.ticker, account.account_id)
        except Exception:
            logger.exception("Failed to record %s in ticker guard for account %s", alert.ticker, account.account_id)
        try:
            self._order_store.add(OrderRecord(
                order_id=order_id,
                account_id=account.account_id,
                client_id=account.client_id,
                ticker=alert.ticker,
                signal=alert.signal,
                requested_quantity=intent.quantity,
                alert_price=alert.price,
                correlation_id=correlation_id,
                execution_price=intent.execution_price,
                order_value=intent.order_value,
                stop_loss_price=intent.stop_loss_price,
                target_price=intent.target_price,
            ))
        except Exception:
            logger.exception("Failed to store order %s", order_id)

    def _queue_rebase(self, alert, account, intent, order_id) -> bool:
        if self._rebase_engine is None or not account.rebase_tp_and_sl:
            return False
        return self._rebase_engine.enqueue(RebaseQueueItem(
            order_id=order_id,
            account=account,
            original_alert_price=alert.price,
            signal=alert.signal,
            original_target_price=intent.target_price,
            original_stop_loss_price=intent.stop_loss_price,
        ))
