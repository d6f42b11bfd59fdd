# signal_router/services/ticker_guard.py
"""Per-account, per-day duplicate ticker tracking.

Entries are keyed by (ticker, account_id, trade_date) where trade_date is the
calendar day in the market timezone, so one account's orders never block
another account and yesterday's entries stop matching at midnight IST.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

import pytz
from sqlalchemy.exc import IntegrityError

from signal_router.config import settings
from signal_router.models.ticker_cache import TickerCache

logger = logging.getLogger(__name__)


def market_now() -> datetime:
    return datetime.now(pytz.timezone(settings.MARKET_TIMEZONE))


def market_today() -> date:
    return market_now().date()


@dataclass
class TickerGuardEntry:
    ticker: str
    account_id: int
    trade_date: date
    order_count: int
    last_order_time: datetime


class TickerGuard(Protocol):
    def has_ordered_today(self, ticker: str, account_id: int) -> bool: ...

    def record_order(self, ticker: str, account_id: int) -> TickerGuardEntry: ...


class InMemoryTickerGuard:
    def __init__(self, today: Callable[[], date] = market_today):
        self._today = today
        self._entries: Dict[Tuple[str, int, date], TickerGuardEntry] = {}
        self._lock = threading.Lock()

    def has_ordered_today(self, ticker: str, account_id: int) -> bool:
        entry = self.get_entry(ticker, account_id)
        return entry is not None and entry.order_count > 0

    def record_order(self, ticker: str, account_id: int) -> TickerGuardEntry:
        key = (ticker.upper(), account_id, self._today())
        now = market_now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = TickerGuardEntry(key[0], account_id, key[2], 0, now)
                self._entries[key] = entry
            entry.order_count += 1
            entry.last_order_time = now
            return entry

    def get_entry(self, ticker: str, account_id: int, day: Optional[date] = None) -> Optional[TickerGuardEntry]:
        with self._lock:
            return self._entries.get((ticker.upper(), account_id, day or self._today()))

    def stats(self) -> dict:
        today = self._today()
        with self._lock:
            todays = [e for e in self._entries.values() if e.trade_date == today]
            total = len(self._entries)
        return {
            "total_entries": total,
            "today_entries": len(todays),
            "tickers_ordered_today": sorted({e.ticker for e in todays}),
        }

    def prune_before(self, day: date) -> int:
        with self._lock:
            stale = [k for k in self._entries if k[2] < day]
            for k in stale:
                del self._entries[k]
        return len(stale)


def _entry_from_row(row: TickerCache) -> TickerGuardEntry:
    return TickerGuardEntry(row.ticker, row.account_id, row.trade_date, row.order_count, row.last_order_time)


class SqlTickerGuard:
    """``ticker_cache`` table backed guard."""

    def __init__(self, session_factory, today: Callable[[], date] = market_today):
        self._session_factory = session_factory
        self._today = today

    def _query(self, db, ticker: str, account_id: int, day: date):
        return db.query(TickerCache).filter(
            TickerCache.ticker == ticker.upper(),
            TickerCache.account_id == account_id,
            TickerCache.trade_date == day,
        )

    def has_ordered_today(self, ticker: str, account_id: int) -> bool:
        entry = self.get_entry(ticker, account_id)
        return entry is not None and entry.order_count > 0

    def get_entry(self, ticker: str, account_id: int, day: Optional[date] = None) -> Optional[TickerGuardEntry]:
        db = self._session_factory()
        try:
            row = self._query(db, ticker, account_id, day or self._today()).first()
            return _entry_from_row(row) if row else None
        finally:
            db.close()

    def record_order(self, ticker: str, account_id: int) -> TickerGuardEntry:
        day = self._today()
        now = market_now().replace(tzinfo=None)
        db = self._session_factory()
        try:
            row = self._query(db, ticker, account_id, day).first()
            if row is None:
                row = TickerCache(ticker=ticker.upper(), account_id=account_id, trade_date=day,
                                  order_count=1, last_order_time=now)
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    # another writer created today's row first
                    db.rollback()
                    row = self._query(db, ticker, account_id, day).one()
                    row.order_count += 1
                    row.last_order_time = now
                    db.commit()
            else:
                row.order_count += 1
                row.last_order_time = now
                db.commit()
            db.refresh(row)
            logger.info("Ticker %s recorded for account %s on %s (count=%s)",
                        row.ticker, account_id, day, row.order_count)
            return _entry_from_row(row)
        finally:
            db.close()

    def stats(self) -> dict:
        today = self._today()
        db = self._session_factory()
        try:
            total = db.query(TickerCache).count()
            rows = db.query(TickerCache.ticker).filter(TickerCache.trade_date == today).all()
            return {
                "total_entries": total,
                "today_entries": len(rows),
                "tickers_ordered_today": sorted({r[0] for r in rows}),
            }
        finally:
            db.close()

    def prune_before(self, day: date) -> int:
        db = self._session_factory()
        try:
            deleted = db.query(TickerCache).filter(TickerCache.trade_date < day).delete()
            db.commit()
            return deleted
        except Exception:
            db.rollback()
            logger.exception("Failed to prune ticker cache")
            raise
        finally:
            db.close()
