import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from signal_router.models.placed_order import PlacedOrder

logger = logging.getLogger(__name__)

MEMORY_ORDER_LIMIT = 1000
ORDER_STATUSES = ("pending", "placed", "failed", "cancelled")


@dataclass
class OrderRecord:
    order_id: str
    account_id: int
    client_id: str
    ticker: str
    signal: str
    requested_quantity: int
    alert_price: float
    correlation_id: Optional[str] = None
    execution_price: Optional[float] = None
    order_value: Optional[float] = None
    stop_loss_price: Optional[float] = None
    target_price: Optional[float] = None
    status: str = "placed"
    error: Optional[str] = None
    placed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["placed_at"] = self.placed_at.isoformat() if self.placed_at else None
        return data


def _stats(orders: List[OrderRecord]) -> dict:
    placed = [o for o in orders if o.status == "placed"]
    return {
        "total_orders": len(orders),
        "placed_orders": len(placed),
        "failed_orders": sum(1 for o in orders if o.status == "failed"),
        "pending_orders": sum(1 for o in orders if o.status == "pending"),
        "total_quantity": sum(o.requested_quantity for o in placed),
        "total_value": sum(o.requested_quantity * o.alert_price for o in placed),
        "unique_tickers": len({o.ticker for o in orders}),
    }


def _check_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise ValueError(f"unknown order status {status!r}")


def _matches(order: OrderRecord, ticker, status, account_id) -> bool:
    if ticker and order.ticker.upper() != ticker.upper():
        return False
    if status and order.status != status:
        return False
    if account_id is not None and order.account_id != account_id:
        return False
    return True


class OrderStore(Protocol):
    def add(self, record: OrderRecord) -> None: ...

    def update_status(self, order_id: str, status: str, error: Optional[str] = None) -> bool: ...

    def list_orders(self, ticker: Optional[str] = None, status: Optional[str] = None,
                    account_id: Optional[int] = None) -> List[OrderRecord]: ...

    def stats(self) -> dict: ...


class InMemoryOrderStore:
    """Keeps the most recent orders only."""

    def __init__(self, limit: int = MEMORY_ORDER_LIMIT):
        self._orders = deque(maxlen=limit)
        self._lock = threading.Lock()

    def add(self, record: OrderRecord) -> None:
        with self._lock:
            self._orders.append(record)

    def update_status(self, order_id: str, status: str, error: Optional[str] = None) -> bool:
        _check_status(status)
        with self._lock:
            for order in self._orders:
                if order.order_id == order_id:
                    order.status = status
                    if error:
                        order.error = error
                    return True
        return False

    def list_orders(self, ticker=None, status=None, account_id=None) -> List[OrderRecord]:
        with self._lock:
            orders = [o for o in self._orders if _matches(o, ticker, status, account_id)]
        return sorted(orders, key=lambda o: o.placed_at, reverse=True)

    def stats(self) -> dict:
        with self._lock:
            return _stats(list(self._orders))


def _record_from_row(row: PlacedOrder) -> OrderRecord:
    return OrderRecord(
        order_id=row.order_id,
        account_id=row.account_id,
        client_id=row.client_id,
        ticker=row.ticker,
        signal=row.signal,
        requested_quantity=row.requested_quantity,
        alert_price=row.alert_price,
        correlation_id=row.correlation_id,
        execution_price=row.execution_price,
        order_value=row.order_value,
        stop_loss_price=row.stop_loss_price,
        target_price=row.target_price,
        status=row.status,
        error=row.error,
        placed_at=row.placed_at,
    )


class SqlOrderStore:
    def __init__(self, session_factory, limit: int = MEMORY_ORDER_LIMIT):
        self._session_factory = session_factory
        self._limit = limit

    def add(self, record: OrderRecord) -> None:
        db = self._session_factory()
        try:
            db.add(PlacedOrder(**asdict(record)))
            db.commit()
            logger.info("Order %s stored (account=%s ticker=%s)", record.order_id, record.account_id, record.ticker)
        except Exception:
            db.rollback()
            logger.exception("Failed to store order %s", record.order_id)
            raise
        finally:
            db.close()

    def update_status(self, order_id: str, status: str, error: Optional[str] = None) -> bool:
        _check_status(status)
        db = self._session_factory()
        try:
            row = db.query(PlacedOrder).filter(PlacedOrder.order_id == order_id).first()
            if row is None:
                return False
            row.status = status
            if error:
                row.error = error
            db.commit()
            return True
        except Exception:
            db.rollback()
            logger.exception("Failed to update order %s", order_id)
            raise
        finally:
            db.close()

    def list_orders(self, ticker=None, status=None, account_id=None) -> List[OrderRecord]:
        db = self._session_factory()
        try:
            query = db.query(PlacedOrder)
            if ticker:
                query = query.filter(PlacedOrder.ticker == ticker.upper())
            if status:
                query = query.filter(PlacedOrder.status == status)
            if account_id is not None:
                query = query.filter(PlacedOrder.account_id == account_id)
            rows = query.order_by(PlacedOrder.placed_at.desc()).limit(self._limit).all()
            return [_record_from_row(r) for r in rows]
        finally:
            db.close()

    def stats(self) -> dict:
        return _stats(self.list_orders())
