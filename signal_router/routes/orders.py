from typing import Optional
from fastapi import APIRouter, Depends, Query
from signal_router.dependencies import get_order_store, get_ticker_guard
from signal_router.services.ticker_guard import market_today

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.get("/")
async def list_orders(
    ticker: Optional[str] = None,
    status: Optional[str] = None,
    account_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
    store=Depends(get_order_store),
):
    orders = store.list_orders(ticker=ticker, status=status, account_id=account_id)[:limit]
    return {"count": len(orders), "orders": [o.to_dict() for o in orders]}


@router.get("/stats")
async def order_stats(store=Depends(get_order_store), guard=Depends(get_ticker_guard)):
    return {"orders": store.stats(), "ticker_cache": guard.stats()}


@router.get("/ticker-cache")
async def ticker_cache(
    ticker: Optional[str] = None,
    account_id: Optional[int] = None,
    guard=Depends(get_ticker_guard),
):
    """Today's duplicate-guard entry for one (ticker, account), or the cache summary."""
    if ticker and account_id is not None:
        entry = guard.get_entry(ticker, account_id)
        return {
            "ticker": ticker.upper(),
            "account_id": account_id,
            "trade_date": str(market_today()),
            "ordered_today": entry is not None and entry.order_count > 0,
            "order_count": entry.order_count if entry else 0,
            "last_order_time": entry.last_order_time.isoformat() if entry else None,
        }
    return guard.stats()
