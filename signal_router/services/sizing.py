import math
from dataclasses import dataclass
from typing import Union

from signal_router.schemas.account import AccountConfig
from signal_router.services.pricing import compute_target_and_stop, round_price, round_to_tick


@dataclass(frozen=True)
class PositionResult:
    base_quantity: int
    quantity: int
    order_value: float
    leveraged_value: float
    position_size_percentage: float
    stop_loss_price: float
    target_price: float


@dataclass(frozen=True)
class Rejection:
    reason: str


def compute_position(alert_price: float, account: AccountConfig, signal: str) -> Union[PositionResult, Rejection]:
    """Size one order for ``account`` at ``alert_price``.

    An order outside the account's value bounds is an expected outcome and
    comes back as a ``Rejection`` rather than an exception.
    """
    if alert_price <= 0:
        return Rejection("alert price must be positive")

    base_qty = math.floor(account.available_funds / alert_price)
    if base_qty <= 0:
        return Rejection(
            f"price {alert_price:.2f} too high for available funds {account.available_funds:.2f}"
        )

    final_qty = math.floor(base_qty * account.risk_on_capital)
    if final_qty <= 0:
        return Rejection("risk on capital multiplier resulted in zero quantity")

    raw_value = final_qty * alert_price
    if raw_value < account.min_order_value:
        return Rejection(
            f"order value {raw_value:.4f} below minimum {account.min_order_value:.2f}"
        )
    if raw_value > account.max_order_value:
        return Rejection(
            f"order value {raw_value:.4f} above maximum {account.max_order_value:.2f}"
        )

    order_value = round_price(raw_value)
    leveraged_value = round_price(raw_value / account.leverage)
    if account.available_funds > 0:
        position_pct = leveraged_value / account.available_funds * 100
    else:
        position_pct = 0.0

    # provisional exits from the alert price; the rebase engine corrects them after the fill
    target, stop_loss = compute_target_and_stop(
        alert_price, signal, account.target_price_percentage, account.stop_loss_percentage
    )
    return PositionResult(
        base_quantity=base_qty,
        quantity=final_qty,
        order_value=order_value,
        leveraged_value=leveraged_value,
        position_size_percentage=position_pct,
        stop_loss_price=round_to_tick(stop_loss),
        target_price=round_to_tick(target),
    )
