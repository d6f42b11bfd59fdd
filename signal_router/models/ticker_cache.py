from sqlalchemy import Column, Integer, String, Date, DateTime, UniqueConstraint
from signal_router.database import Base


class TickerCache(Base):
    """Daily per-account order counter used to block duplicate tickers."""
    __tablename__ = "ticker_cache"
    __table_args__ = (
        UniqueConstraint("ticker", "account_id", "trade_date", name="uq_ticker_account_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String, index=True)
    account_id = Column(Integer, index=True)
    trade_date = Column(Date, index=True)
    order_count = Column(Integer, default=0)
    last_order_time = Column(DateTime)
