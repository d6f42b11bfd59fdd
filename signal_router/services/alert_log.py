# signal_router/services/alert_log.py
"""Alert history backed by the ``alerts`` table."""
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd
from sqlalchemy.orm import Session

from signal_router.models.alert_log import AlertLog
from signal_router.schemas.alert import TradingViewAlert

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id", "received_at", "alert_timestamp", "ticker", "price", "signal", "strategy",
    "custom_note", "status", "reason",
]


def _utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_alert(db: Session, alert: TradingViewAlert, status: str, reason: Optional[str] = None,
                 summary: Optional[dict] = None) -> AlertLog:
    row = AlertLog(
        ticker=alert.ticker,
        signal=alert.signal,
        price=alert.price,
        strategy=alert.strategy,
        custom_note=alert.custom_note,
        alert_timestamp=_utc_naive(alert.timestamp),
        status=status,
        reason=reason,
        result_data=json.dumps(summary) if summary is not None else None,
    )
    db.add(row)
    db.commit()
    return row


def list_alerts(
    db: Session,
    ticker: Optional[str] = None,
    signal: Optional[str] = None,
    strategy: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[AlertLog]:
    """Newest first. ``ticker`` is a case-insensitive substring match; dates are inclusive."""
    query = db.query(AlertLog)
    if ticker:
        query = query.filter(AlertLog.ticker.contains(ticker.upper()))
    if signal:
        query = query.filter(AlertLog.signal == signal.upper())
    if strategy:
        query = query.filter(AlertLog.strategy == strategy)
    if start:
        query = query.filter(AlertLog.received_at >= _utc_naive(start))
    if end:
        query = query.filter(AlertLog.received_at <= _utc_naive(end))
    return query.order_by(AlertLog.received_at.desc(), AlertLog.id.desc()).limit(limit).all()


def alert_to_dict(row: AlertLog) -> dict:
    return {
        "id": row.id,
        "ticker": row.ticker,
        "signal": row.signal,
        "price": row.price,
        "strategy": row.strategy,
        "custom_note": row.custom_note,
        "alert_timestamp": row.alert_timestamp.isoformat() if row.alert_timestamp else None,
        "status": row.status,
        "reason": row.reason,
        "summary": json.loads(row.result_data) if row.result_data else None,
        "received_at": row.received_at.isoformat() if row.received_at else None,
    }


def alerts_to_csv(rows: List[AlertLog]) -> str:
    frame = pd.DataFrame([alert_to_dict(r) for r in rows], columns=EXPORT_COLUMNS)
    return frame.to_csv(index=False)
