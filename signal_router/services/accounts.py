# signal_router/services/accounts.py
"""Account configuration store.

Accounts come from the ``account_settings`` table when it has rows, and from
env-numbered variables (``DHAN_CLIENT_ID_1``, ``DHAN_ACCESS_TOKEN_1``, ...)
otherwise. Every source is funnelled through ``AccountConfig`` so invalid
parameters never reach the dispatcher.
"""
import logging
import os
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from signal_router.models.account_settings import AccountSettings
from signal_router.schemas.account import AccountConfig, AccountSettingsIn

logger = logging.getLogger(__name__)

# env suffix -> (AccountConfig field, default)
_ENV_FIELDS = {
    "AVAILABLE_FUNDS": ("available_funds", "20000"),
    "LEVERAGE": ("leverage", "2"),
    "MAX_POSITION_SIZE": ("max_position_size", "0.1"),
    "MIN_ORDER_VALUE": ("min_order_value", "1000"),
    "MAX_ORDER_VALUE": ("max_order_value", "50000"),
    "STOP_LOSS_PERCENTAGE": ("stop_loss_percentage", "0.01"),
    "TARGET_PRICE_PERCENTAGE": ("target_price_percentage", "0.015"),
    "RISK_ON_CAPITAL": ("risk_on_capital", "1.0"),
    "MIN_TRAIL_JUMP": ("min_trail_jump", "0.05"),
    "REBASE_THRESHOLD_PERCENTAGE": ("rebase_threshold_percentage", "0.001"),
    "LIMIT_BUFFER_PERCENTAGE": ("limit_buffer_percentage", "0"),
}
_ENV_FLAGS = {
    "ENABLE_TRAILING_STOP_LOSS": ("enable_trailing_stop_loss", "false"),
    "REBASE_TP_AND_SL": ("rebase_tp_and_sl", "true"),
    "ALLOW_DUPLICATE_TICKERS": ("allow_duplicate_tickers", "false"),
    "IS_ACTIVE": ("is_active", "true"),
}


def format_validation_errors(exc: ValidationError) -> List[str]:
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        errors.append(f"{field}: {msg}" if field else msg)
    return errors


def validate_account_payload(payload: dict) -> Tuple[bool, List[str]]:
    """Validate a raw account dict without building it. Returns (ok, errors)."""
    try:
        AccountConfig(**payload)
    except ValidationError as e:
        return False, format_validation_errors(e)
    return True, []


def _env_account(environ, suffix: str, account_id: int) -> Optional[AccountConfig]:
    client_id = environ.get(f"DHAN_CLIENT_ID{suffix}")
    token = environ.get(f"DHAN_ACCESS_TOKEN{suffix}")
    if not client_id or not token:
        logger.warning("Account %s is missing a client id or access token; skipping", account_id)
        return None

    payload = {"account_id": account_id, "client_id": client_id, "access_token": token}
    for key, (field, default) in _ENV_FIELDS.items():
        payload[field] = environ.get(f"{key}{suffix}", default)
    for key, (field, default) in _ENV_FLAGS.items():
        payload[field] = environ.get(f"{key}{suffix}", default).strip().lower()
    payload["order_type"] = environ.get(f"ORDER_TYPE{suffix}", "MARKET").upper()

    try:
        return AccountConfig(**payload)
    except ValidationError as e:
        logger.error("Account %s has invalid configuration: %s", account_id, "; ".join(format_validation_errors(e)))
        return None


def load_accounts_from_env(environ=None) -> List[AccountConfig]:
    """Scan numbered accounts from 1 upward until an index has neither id nor token."""
    environ = os.environ if environ is None else environ
    accounts = []
    index = 1
    while environ.get(f"DHAN_CLIENT_ID_{index}") or environ.get(f"DHAN_ACCESS_TOKEN_{index}"):
        account = _env_account(environ, f"_{index}", index)
        if account is not None:
            accounts.append(account)
        index += 1

    if index == 1 and environ.get("DHAN_CLIENT_ID") and environ.get("DHAN_ACCESS_TOKEN"):
        # legacy single-account variables
        account = _env_account(environ, "", 1)
        if account is not None:
            accounts.append(account)
    return accounts


def account_from_row(row: AccountSettings) -> AccountConfig:
    return AccountConfig(
        account_id=row.id,
        client_id=row.dhan_client_id,
        access_token=row.dhan_access_token,
        available_funds=row.available_funds,
        leverage=row.leverage,
        max_position_size=row.max_position_size,
        min_order_value=row.min_order_value,
        max_order_value=row.max_order_value,
        stop_loss_percentage=row.stop_loss_percentage,
        target_price_percentage=row.target_price_percentage,
        risk_on_capital=row.risk_on_capital,
        enable_trailing_stop_loss=row.enable_trailing_stop_loss,
        min_trail_jump=row.min_trail_jump,
        rebase_tp_and_sl=row.rebase_tp_and_sl,
        rebase_threshold_percentage=row.rebase_threshold_percentage,
        allow_duplicate_tickers=row.allow_duplicate_tickers,
        order_type=(row.order_type or "MARKET").upper(),
        limit_buffer_percentage=row.limit_buffer_percentage,
        is_active=row.is_active,
    )


def load_accounts(db: Session, environ=None) -> List[AccountConfig]:
    """All valid accounts: stored settings first, env variables as fallback."""
    rows = db.query(AccountSettings).order_by(AccountSettings.id).all()
    if not rows:
        return load_accounts_from_env(environ)

    accounts = []
    for row in rows:
        try:
            accounts.append(account_from_row(row))
        except ValidationError as e:
            logger.error(
                "Stored settings for client %s are invalid: %s",
                row.dhan_client_id, "; ".join(format_validation_errors(e)),
            )
    return accounts


def load_active_accounts(db: Session, environ=None) -> List[AccountConfig]:
    return [a for a in load_accounts(db, environ) if a.is_active]


def upsert_account_settings(db: Session, body: AccountSettingsIn) -> Tuple[Optional[AccountSettings], List[str]]:
    """Validate and store settings for one client id. Returns (row, errors)."""
    existing = db.query(AccountSettings).filter(
        AccountSettings.dhan_client_id == body.dhan_client_id
    ).first()

    payload = body.model_dump()
    candidate = {
        "account_id": existing.id if existing else 1,
        "client_id": payload.pop("dhan_client_id"),
        "access_token": payload.pop("dhan_access_token"),
        **payload,
    }
    candidate["order_type"] = str(candidate["order_type"]).upper()
    ok, errors = validate_account_payload(candidate)
    if not ok:
        return None, errors

    row = existing or AccountSettings(dhan_client_id=body.dhan_client_id)
    for field, value in body.model_dump().items():
        setattr(row, field, value)
    row.order_type = candidate["order_type"]
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("Account settings saved for client %s (id=%s)", row.dhan_client_id, row.id)
    return row, []


def summarize_accounts(accounts: List[AccountConfig]) -> Dict:
    active = [a for a in accounts if a.is_active]
    return {
        "total_accounts": len(accounts),
        "active_accounts": len(active),
        "total_available_funds": sum(a.available_funds for a in accounts),
        "total_leveraged_funds": sum(a.available_funds * a.leverage for a in accounts),
        "accounts": [
            {
                "account_id": a.account_id,
                "client_id": a.client_id,
                "access_token": a.masked_token,
                "available_funds": a.available_funds,
                "leverage": a.leverage,
                "leveraged_funds": a.available_funds * a.leverage,
                "order_type": a.order_type,
                "rebase_tp_and_sl": a.rebase_tp_and_sl,
                "allow_duplicate_tickers": a.allow_duplicate_tickers,
                "is_active": a.is_active,
            }
            for a in accounts
        ],
    }
