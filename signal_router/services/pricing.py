# signal_router/services/pricing.py
"""Price arithmetic shared by the dispatcher and the rebase engine.

NSE equities trade on a fixed 0.05 tick. Rounding is done on ``Decimal``
values with half-up semantics so 580.2399 snaps to 580.25 and an already
aligned price is returned unchanged.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

from signal_router.schemas.account import TICK_SIZE

_CENT = Decimal("0.01")


def round_price(price: float) -> float:
    """Round to 2 decimals, half-up."""
    return float(Decimal(str(price)).quantize(_CENT, rounding=ROUND_HALF_UP))


def round_to_tick(price: float, tick: float = TICK_SIZE) -> float:
    tick_dec = Decimal(str(tick))
    steps = (Decimal(str(price)) / tick_dec).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float((steps * tick_dec).quantize(_CENT, rounding=ROUND_HALF_UP))


def apply_limit_buffer(price: float, signal: str, buffer_pct: float) -> float:
    """Move a LIMIT price toward the fill side by ``buffer_pct`` percent, tick aligned."""
    if signal == "SELL":
        buffered = price * (1 - buffer_pct / 100)
    else:
        buffered = price * (1 + buffer_pct / 100)
    return round_to_tick(buffered)


def compute_target_and_stop(entry: float, signal: str, target_pct: float, stop_loss_pct: float) -> Tuple[float, float]:
    """Return (target, stop_loss) around ``entry``.

    BUY: target above entry, stop below. SELL: target below entry, stop above.
    Values are unrounded; callers tick-align what they send to the broker.
    """
    if signal == "SELL":
        return entry * (1 - target_pct), entry * (1 + stop_loss_pct)
    return entry * (1 + target_pct), entry * (1 - stop_loss_pct)


def price_deviation(actual: float, reference: float) -> float:
    """Absolute deviation of ``actual`` from ``reference`` as a fraction."""
    return abs(actual - reference) / reference
