from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from datetime import datetime
from signal_router.database import Base


class AlertLog(Base):
    """Every authenticated TradingView alert, with what the router did with it."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String, index=True)
    signal = Column(String)
    price = Column(Float)
    strategy = Column(String)
    custom_note = Column(Text, nullable=True)
    alert_timestamp = Column(DateTime, nullable=True)  # UTC, as sent by TradingView
    status = Column(String)  # success | partial | failed | rejected | ignored | received | db_error
    reason = Column(Text, nullable=True)
    result_data = Column(Text, nullable=True)  # placement summary as JSON
    received_at = Column(DateTime, default=datetime.utcnow, index=True)
