from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from datetime import datetime
from signal_router.database import Base


class PlacedOrder(Base):
    """Orders the broker accepted, one row per account."""
    __tablename__ = "placed_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, unique=True, index=True, doc="Broker-assigned order id")
    correlation_id = Column(String, nullable=True)
    account_id = Column(Integer, index=True)
    client_id = Column(String)
    ticker = Column(String, index=True)
    signal = Column(String)
    requested_quantity = Column(Integer)
    alert_price = Column(Float)
    execution_price = Column(Float, nullable=True)  # LIMIT price actually submitted
    order_value = Column(Float, nullable=True)
    stop_loss_price = Column(Float, nullable=True)
    target_price = Column(Float, nullable=True)
    status = Column(String, default="placed")  # pending | placed | failed | cancelled
    error = Column(Text, nullable=True)
    placed_at = Column(DateTime, default=datetime.utcnow, index=True)
