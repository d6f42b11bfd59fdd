from fastapi import Request

from signal_router.database import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Services are built once in the app lifespan and parked on app.state.

def get_dispatcher(request: Request):
    return request.app.state.dispatcher


def get_rebase_engine(request: Request):
    return request.app.state.rebase_engine


def get_order_store(request: Request):
    return request.app.state.order_store


def get_ticker_guard(request: Request):
    return request.app.state.ticker_guard


def get_broadcaster(request: Request):
    return request.app.state.broadcaster
