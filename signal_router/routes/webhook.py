# signal_router/routes/webhook.py
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from signal_router.config import settings
from signal_router.dependencies import get_broadcaster, get_db, get_dispatcher
from signal_router.schemas.alert import TradingViewAlert
from signal_router.services.accounts import load_active_accounts
from signal_router.services.alert_log import record_alert
from signal_router.services.dispatcher import summarize_outcomes
import logging

router = APIRouter(prefix="/webhook", tags=["Webhook"])


def _log_alert(db: Session, alert: TradingViewAlert, status: str, reason: Optional[str] = None,
               summary: Optional[dict] = None) -> None:
    try:
        record_alert(db, alert, status, reason=reason, summary=summary)
    except Exception:
        db.rollback()
        logging.exception("Failed to record alert %s %s", alert.signal, alert.ticker)


@router.post("/tradingview")
async def tradingview_webhook(
    alert: TradingViewAlert,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    broadcaster=Depends(get_broadcaster),
):
    """
    Receives a TradingView alert and places one order per active account.

    The response lists every account's outcome. Some accounts succeeding
    while others are rejected is a normal result and still returns 200.
    Rebase results are reported later through /rebase. Every authenticated
    alert is written to the alert log with its outcome.
    """
    if settings.WEBHOOK_SECRET and alert.webhook_secret != settings.WEBHOOK_SECRET:
        logging.warning("Webhook for %s rejected: bad secret", alert.ticker)
        return JSONResponse({"status": "rejected", "reason": "invalid webhook secret"}, status_code=401)

    if alert.signal == "HOLD":
        _log_alert(db, alert, "ignored", "HOLD signal")
        return {"status": "ignored", "reason": "HOLD signal", "ticker": alert.ticker}

    if not settings.AUTO_PLACE_ORDER:
        logging.info("Auto placement disabled; alert %s %s recorded only", alert.signal, alert.ticker)
        _log_alert(db, alert, "received", "auto order placement disabled")
        return {"status": "received", "reason": "auto order placement disabled", "ticker": alert.ticker}

    try:
        accounts = load_active_accounts(db)
    except Exception as e:
        db.rollback()
        logging.exception("Failed to load account settings")
        _log_alert(db, alert, "db_error", str(e))
        return {"status": "db_error", "reason": str(e)}

    if not accounts:
        _log_alert(db, alert, "rejected", "no active accounts configured")
        return {"status": "rejected", "reason": "no active accounts configured"}

    outcomes = await dispatcher.place_orders_for_alert(alert, accounts)
    payload = [o.to_dict() for o in outcomes]
    summary = summarize_outcomes(outcomes)

    try:
        await broadcaster.publish_placements(alert.ticker, alert.signal, payload)
    except Exception:
        logging.exception("Broadcast failed")

    if summary["successful"] == summary["total_accounts"]:
        status = "success"
    elif summary["successful"]:
        status = "partial"
    else:
        status = "failed"
    _log_alert(db, alert, status, summary=summary)

    return {
        "status": status,
        "ticker": alert.ticker,
        "signal": alert.signal,
        "price": alert.price,
        "summary": summary,
        "outcomes": payload,
    }
