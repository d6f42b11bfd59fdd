from contextlib import asynccontextmanager
from fastapi import FastAPI
from signal_router.database import Base, SessionLocal, engine
from signal_router.routes import accounts, alerts, orders, rebase, webhook
from signal_router.config import settings
# Import all models to ensure they're registered with SQLAlchemy
from signal_router.models.account_settings import AccountSettings
from signal_router.models.placed_order import PlacedOrder
from signal_router.models.ticker_cache import TickerCache
from signal_router.models.alert_log import AlertLog
from signal_router.services.broadcaster import EventBroadcaster
from signal_router.services.broker import dhan_client_factory
from signal_router.services.dispatcher import OrderDispatcher
from signal_router.services.instruments import (
    ChainedInstrumentResolver,
    ScripMasterResolver,
    StaticInstrumentResolver,
)
from signal_router.services.order_store import SqlOrderStore
from signal_router.services.rebase import RebaseEngine
from signal_router.services.ticker_guard import SqlTickerGuard, market_today
import logging

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

Base.metadata.create_all(bind=engine)


def build_resolver():
    resolvers = []
    if settings.INSTRUMENT_MAP:
        resolvers.append(StaticInstrumentResolver.from_string(settings.INSTRUMENT_MAP))
    if settings.INSTRUMENT_CSV_PATH:
        try:
            resolvers.append(ScripMasterResolver.from_csv(settings.INSTRUMENT_CSV_PATH))
        except (OSError, ValueError):
            logging.exception("Failed to load scrip master from %s", settings.INSTRUMENT_CSV_PATH)
    if not resolvers:
        logging.warning("No instrument source configured; every alert will fail symbol lookup")
    return ChainedInstrumentResolver(resolvers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    broadcaster = EventBroadcaster()
    order_store = SqlOrderStore(SessionLocal)
    rebase_engine = RebaseEngine(
        dhan_client_factory, on_result=broadcaster.publish_rebase_result, order_store=order_store
    )
    ticker_guard = SqlTickerGuard(SessionLocal)
    try:
        pruned = ticker_guard.prune_before(market_today())
        if pruned:
            logging.info("Pruned %d stale ticker cache entries", pruned)
    except Exception:
        logging.exception("Ticker cache pruning failed")

    app.state.broadcaster = broadcaster
    app.state.rebase_engine = rebase_engine
    app.state.order_store = order_store
    app.state.ticker_guard = ticker_guard
    app.state.dispatcher = OrderDispatcher(
        dhan_client_factory, build_resolver(), ticker_guard, order_store, rebase_engine
    )

    rebase_engine.start()
    try:
        yield
    finally:
        await rebase_engine.stop()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.include_router(webhook.router)
app.include_router(rebase.router)
app.include_router(orders.router)
app.include_router(accounts.router)
app.include_router(alerts.router)


@app.get("/")
def root():
    return {"message": "Dhan Signal Router API is running", "env": settings.ENV}
