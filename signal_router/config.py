import os
from dotenv import load_dotenv

load_dotenv()


def _float_list(raw: str):
    return tuple(float(part) for part in raw.split(",") if part.strip())


class Settings:
    APP_NAME = "Dhan Signal Router"
    ENV = os.getenv("ENV", "development")
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signal_router.db")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Webhook ingestion
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    AUTO_PLACE_ORDER = os.getenv("AUTO_PLACE_ORDER", "true").lower() == "true"

    # Broker
    DHAN_BASE_URL = os.getenv("DHAN_BASE_URL", "https://api.dhan.co")
    DHAN_EXCHANGE_SEGMENT = os.getenv("DHAN_EXCHANGE_SEGMENT", "NSE_EQ")
    DHAN_PRODUCT_TYPE = os.getenv("DHAN_PRODUCT_TYPE", "CNC")
    BROKER_TIMEOUT_SECONDS = float(os.getenv("BROKER_TIMEOUT_SECONDS", "15"))

    # TP/SL rebase engine
    REBASE_INITIAL_DELAY_SECONDS = float(os.getenv("REBASE_INITIAL_DELAY_SECONDS", "5"))
    REBASE_ATTEMPT_DELAY_SECONDS = float(os.getenv("REBASE_ATTEMPT_DELAY_SECONDS", "2"))
    REBASE_MAX_ATTEMPTS = int(os.getenv("REBASE_MAX_ATTEMPTS", "8"))
    REBASE_NETWORK_BACKOFF_SECONDS = _float_list(os.getenv("REBASE_NETWORK_BACKOFF_SECONDS", "1,2,4"))
    REBASE_RESULTS_CAP = int(os.getenv("REBASE_RESULTS_CAP", "500"))
    REBASE_FALLBACK_TO_ALERT_PRICE = os.getenv("REBASE_FALLBACK_TO_ALERT_PRICE", "false").lower() == "true"

    # Calendar day used by the duplicate-ticker guard
    MARKET_TIMEZONE = os.getenv("MARKET_TIMEZONE", "Asia/Kolkata")

    # Instrument lookup
    INSTRUMENT_CSV_PATH = os.getenv("INSTRUMENT_CSV_PATH", "")
    INSTRUMENT_MAP = os.getenv("INSTRUMENT_MAP", "")

settings = Settings()
