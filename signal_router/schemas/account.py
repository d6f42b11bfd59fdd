from typing import Literal
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

TICK_SIZE = 0.05


def is_tick_multiple(value: float, tick: float = TICK_SIZE) -> bool:
    steps = round(value / tick)
    return abs(steps * tick - value) < 1e-9


class AccountConfig(BaseModel):
    """Validated trading parameters for one broker account.

    Instances are immutable; the dispatcher and rebase engine receive them
    by value and never write back.
    """
    model_config = ConfigDict(frozen=True)

    account_id: int = Field(ge=1)
    client_id: str = Field(min_length=1)
    access_token: SecretStr
    available_funds: float = Field(ge=0)
    leverage: float = Field(default=2.0, ge=1, le=10)
    max_position_size: float = Field(default=0.1, gt=0, le=1)
    min_order_value: float = Field(default=1000.0, ge=0)
    max_order_value: float = Field(default=50000.0, gt=0)
    stop_loss_percentage: float = Field(default=0.01, gt=0, le=1)
    target_price_percentage: float = Field(default=0.015, gt=0, le=1)
    risk_on_capital: float = Field(default=1.0, gt=0, le=5)
    enable_trailing_stop_loss: bool = False
    min_trail_jump: float = Field(default=0.05, ge=0, le=10)
    rebase_tp_and_sl: bool = True
    rebase_threshold_percentage: float = Field(default=0.001, ge=0, le=1)
    allow_duplicate_tickers: bool = False
    order_type: Literal["MARKET", "LIMIT"] = "MARKET"
    limit_buffer_percentage: float = Field(default=0.0, ge=0, le=10)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_cross_field_rules(self):
        if self.min_order_value >= self.max_order_value:
            raise ValueError("min_order_value must be less than max_order_value")
        if self.enable_trailing_stop_loss:
            if not (TICK_SIZE <= self.min_trail_jump <= 10):
                raise ValueError("min_trail_jump must be between 0.05 and 10")
            if not is_tick_multiple(self.min_trail_jump):
                raise ValueError("min_trail_jump must be a multiple of 0.05")
        return self

    @property
    def trailing_jump(self):
        """Trail jump to send to the broker, or None when trailing is off."""
        return self.min_trail_jump if self.enable_trailing_stop_loss else None

    @property
    def masked_token(self) -> str:
        raw = self.access_token.get_secret_value()
        return f"{raw[:4]}...{raw[-4:]}" if len(raw) > 8 else "****"


class AccountSettingsIn(BaseModel):
    """Body accepted by the account settings endpoint."""
    dhan_client_id: str
    dhan_access_token: str
    available_funds: float = 20000.0
    leverage: float = 2.0
    max_position_size: float = 0.1
    min_order_value: float = 1000.0
    max_order_value: float = 50000.0
    stop_loss_percentage: float = 0.01
    target_price_percentage: float = 0.015
    risk_on_capital: float = 1.0
    enable_trailing_stop_loss: bool = False
    min_trail_jump: float = 0.05
    rebase_tp_and_sl: bool = True
    rebase_threshold_percentage: float = 0.001
    allow_duplicate_tickers: bool = False
    order_type: str = "MARKET"
    limit_buffer_percentage: float = 0.0
    is_active: bool = True
