from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from sqlalchemy.sql import func
from signal_router.database import Base


class AccountSettings(Base):
    """Per-account trading parameters for one Dhan client."""
    __tablename__ = "account_settings"

    id = Column(Integer, primary_key=True, index=True)
    dhan_client_id = Column(String, unique=True, nullable=False, index=True)
    dhan_access_token = Column(String, nullable=False)

    # Capital and sizing
    available_funds = Column(Float, default=20000.0, doc="Capital used to size each order")
    leverage = Column(Float, default=2.0)
    max_position_size = Column(Float, default=0.1, doc="Fraction of funds per trade")
    min_order_value = Column(Float, default=1000.0)
    max_order_value = Column(Float, default=50000.0)
    risk_on_capital = Column(Float, default=1.0, doc="Multiplier applied to the base quantity")

    # Exits
    stop_loss_percentage = Column(Float, default=0.01)
    target_price_percentage = Column(Float, default=0.015)
    enable_trailing_stop_loss = Column(Boolean, default=False)
    min_trail_jump = Column(Float, default=0.05)

    # TP/SL rebase after fill
    rebase_tp_and_sl = Column(Boolean, default=True)
    rebase_threshold_percentage = Column(Float, default=0.001, doc="Minimum fill deviation (fraction) that triggers a rebase")

    # Order routing
    allow_duplicate_tickers = Column(Boolean, default=False)
    order_type = Column(String, default="MARKET", doc="MARKET or LIMIT")
    limit_buffer_percentage = Column(Float, default=0.0)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
