from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session
from signal_router.dependencies import get_db
from signal_router.services.alert_log import alert_to_dict, alerts_to_csv, list_alerts

router = APIRouter(prefix="/alerts", tags=["Alerts"])


@router.get("/")
def get_alerts(
    ticker: Optional[str] = None,
    signal: Optional[str] = None,
    strategy: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    rows = list_alerts(db, ticker=ticker, signal=signal, strategy=strategy, start=start, end=end, limit=limit)
    return {"count": len(rows), "alerts": [alert_to_dict(r) for r in rows]}


@router.get("/export")
def export_alerts(
    ticker: Optional[str] = None,
    signal: Optional[str] = None,
    strategy: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(10000, ge=1, le=100000),
    db: Session = Depends(get_db),
):
    rows = list_alerts(db, ticker=ticker, signal=signal, strategy=strategy, start=start, end=end, limit=limit)
    filename = f"alerts_{datetime.utcnow():%Y%m%d_%H%M%S}.csv"
    return Response(
        alerts_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
