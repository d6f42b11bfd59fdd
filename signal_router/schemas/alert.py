from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator


class TradingViewAlert(BaseModel):
    ticker: str
    price: float = Field(gt=0)
    signal: Literal["BUY", "SELL", "HOLD"]
    strategy: str
    timestamp: datetime
    custom_note: Optional[str] = None
    webhook_secret: Optional[str] = None

    @field_validator("ticker", "strategy")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("ticker")
    @classmethod
    def _upper_ticker(cls, value: str) -> str:
        return value.upper()

    @field_validator("signal", mode="before")
    @classmethod
    def _upper_signal(cls, value):
        return value.upper() if isinstance(value, str) else value
