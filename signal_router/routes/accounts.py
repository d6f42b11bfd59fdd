from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from signal_router.dependencies import get_db
from signal_router.schemas.account import AccountSettingsIn
from signal_router.services.accounts import load_accounts, summarize_accounts, upsert_account_settings
import logging

router = APIRouter(prefix="/accounts", tags=["Accounts"])


@router.get("/")
async def get_accounts(db: Session = Depends(get_db)):
    """Configured accounts with access tokens masked."""
    return summarize_accounts(load_accounts(db))


@router.post("/")
async def save_account(body: AccountSettingsIn, db: Session = Depends(get_db)):
    try:
        row, errors = upsert_account_settings(db, body)
    except Exception as e:
        db.rollback()
        logging.exception("Failed to save account settings")
        return JSONResponse({"status": "db_error", "reason": str(e)}, status_code=500)

    if errors:
        return JSONResponse({"status": "error", "errors": errors}, status_code=400)
    return {"status": "ok", "message": "Settings saved", "account_id": row.id}
