# signal_router/services/broker.py
"""Dhan REST adapter.

Only four broker operations are needed: place a super order, read an order,
and move the target or stop-loss leg of a super order. Transport problems
surface as ``BrokerNetworkError`` (``BrokerTimeout`` for timeouts) and broker
refusals as ``BrokerBusinessError`` so callers can treat them differently.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from signal_router.config import settings
from signal_router.schemas.account import AccountConfig

logger = logging.getLogger(__name__)

FILLED_STATUSES = {"TRADED", "PART_TRADED"}
TERMINAL_FAILURE_STATUSES = {"REJECTED", "CANCELLED", "EXPIRED"}


class BrokerError(Exception):
    """Base class for every failure reported by the broker adapter."""


class BrokerBusinessError(BrokerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BrokerNetworkError(BrokerError):
    """Connection failures and unusable response bodies."""


class BrokerTimeout(BrokerNetworkError):
    pass


def new_correlation_id() -> str:
    return f"TV_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class OrderRequest:
    client_id: str
    transaction_type: str  # BUY or SELL
    security_id: str
    quantity: int
    order_type: str = "MARKET"
    price: float = 0.0
    target_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    trailing_jump: Optional[float] = None
    exchange_segment: str = field(default_factory=lambda: settings.DHAN_EXCHANGE_SEGMENT)
    product_type: str = field(default_factory=lambda: settings.DHAN_PRODUCT_TYPE)
    correlation_id: str = field(default_factory=new_correlation_id)

    def to_payload(self) -> dict:
        payload = {
            "dhanClientId": self.client_id,
            "correlationId": self.correlation_id,
            "transactionType": self.transaction_type,
            "exchangeSegment": self.exchange_segment,
            "productType": self.product_type,
            "orderType": self.order_type,
            "securityId": self.security_id,
            "quantity": self.quantity,
            "price": self.price,
        }
        if self.target_price is not None:
            payload["targetPrice"] = self.target_price
        if self.stop_loss_price is not None:
            payload["stopLossPrice"] = self.stop_loss_price
        if self.trailing_jump:
            payload["trailingJump"] = self.trailing_jump
        return payload


@dataclass
class OrderAck:
    order_id: str
    status: str
    correlation_id: Optional[str] = None


@dataclass
class OrderDetails:
    order_id: str
    status: str
    price: float
    average_price: float
    filled_quantity: int = 0

    @property
    def entry_price(self) -> float:
        return self.average_price if self.average_price > 0 else self.price


@dataclass
class NotReady:
    reason: str
    status: Optional[str] = None
    terminal: bool = False


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_order_details(order_id: str, data: Any) -> Union[OrderDetails, NotReady]:
    """Turn a raw order payload into ``OrderDetails`` only when it is usable.

    Usable means a filled (or partly filled) status and a positive price.
    Anything else, including empty or half-populated payloads, is ``NotReady``.
    """
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict) or not data:
        return NotReady("empty order details")

    status = str(data.get("orderStatus") or data.get("status") or "").upper()
    if not status:
        return NotReady("order status missing")
    if status in TERMINAL_FAILURE_STATUSES:
        return NotReady(f"order {status} at broker", status=status, terminal=True)
    if status not in FILLED_STATUSES:
        return NotReady(f"order not filled yet ({status})", status=status)

    details = OrderDetails(
        order_id=str(data.get("orderId") or order_id),
        status=status,
        price=_as_float(data.get("price")),
        average_price=_as_float(data.get("averageTradedPrice") or data.get("averagePrice")),
        filled_quantity=int(_as_float(data.get("filledQty") or data.get("filledQuantity"))),
    )
    if details.entry_price <= 0:
        return NotReady("no valid entry price in order details", status=status)
    return details


class BrokerClient(Protocol):
    async def place_order(self, request: OrderRequest) -> OrderAck: ...

    async def get_order_details(self, order_id: str) -> Union[OrderDetails, NotReady]: ...

    async def update_target_price(self, order_id: str, client_id: str, price: float) -> None: ...

    async def update_stop_loss(self, order_id: str, client_id: str, price: float,
                               trailing_jump: Optional[float] = None) -> None: ...


class DhanClient:
    """Dhan v2 client for a single account.

    A fresh ``httpx.AsyncClient`` is opened per request so concurrent
    account tasks never share a connection.
    """

    def __init__(self, access_token: str, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url or settings.DHAN_BASE_URL
        self.timeout = timeout if timeout is not None else settings.BROKER_TIMEOUT_SECONDS
        self._transport = transport
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "access-token": access_token,
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, headers=self._headers,
                                         timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise BrokerTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise BrokerNetworkError(f"{method} {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400:
            message = None
            if isinstance(data, dict):
                message = data.get("errorMessage") or data.get("message") or data.get("error")
            raise BrokerBusinessError(message or f"broker returned HTTP {resp.status_code}", resp.status_code)
        if data is None:
            raise BrokerNetworkError(f"{method} {path} returned a malformed body")
        return data

    async def place_order(self, request: OrderRequest) -> OrderAck:
        data = await self._request("POST", "/v2/super/orders", json=request.to_payload())
        order_id = data.get("orderId") if isinstance(data, dict) else None
        if not order_id:
            raise BrokerNetworkError("order response did not include an orderId")
        return OrderAck(
            order_id=str(order_id),
            status=str(data.get("orderStatus") or "PENDING"),
            correlation_id=request.correlation_id,
        )

    async def get_order_details(self, order_id: str) -> Union[OrderDetails, NotReady]:
        data = await self._request("GET", f"/v2/orders/{order_id}")
        return parse_order_details(order_id, data)

    async def update_target_price(self, order_id: str, client_id: str, price: float) -> None:
        body = {"dhanClientId": client_id, "orderId": order_id, "legName": "TARGET_LEG", "targetPrice": price}
        await self._request("PUT", f"/v2/super/orders/{order_id}", json=body)

    async def update_stop_loss(self, order_id: str, client_id: str, price: float,
                               trailing_jump: Optional[float] = None) -> None:
        body = {"dhanClientId": client_id, "orderId": order_id, "legName": "STOP_LOSS_LEG", "stopLossPrice": price}
        if trailing_jump:
            body["trailingJump"] = trailing_jump
        await self._request("PUT", f"/v2/super/orders/{order_id}", json=body)


def dhan_client_factory(account: AccountConfig) -> DhanClient:
    return DhanClient(account.access_token.get_secret_value())


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning("Broker network error (%s); retrying in %.1fs",
                   retry_state.outcome.exception(), retry_state.next_action.sleep)


async def retry_on_network_error(call: Callable[[], Awaitable[Any]], backoff: Iterable[float],
                                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Any:
    """Run ``call``, retrying after each ``backoff`` delay on network errors.

    Business errors propagate immediately. Once the schedule is used up the
    last network error is re-raised.
    """
    delays = list(backoff)
    retrying = AsyncRetrying(
        sleep=sleep,
        retry=retry_if_exception_type(BrokerNetworkError),
        stop=stop_after_attempt(len(delays) + 1),
        wait=wait_chain(*[wait_fixed(d) for d in delays]) if delays else wait_none(),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await call()
