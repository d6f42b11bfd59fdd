import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import make_account
from signal_router.database import Base
from signal_router.models.account_settings import AccountSettings
from signal_router.schemas.account import AccountSettingsIn
from signal_router.services.accounts import (
    load_accounts,
    load_accounts_from_env,
    summarize_accounts,
    upsert_account_settings,
    validate_account_payload,
)


def create_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine)()


def payload(**overrides):
    values = {"account_id": 1, "client_id": "1100000001", "access_token": "tok", "available_funds": 20000}
    values.update(overrides)
    return values


def test_valid_payload():
    ok, errors = validate_account_payload(payload())
    assert ok is True
    assert errors == []


def test_min_order_value_must_be_below_max():
    ok, errors = validate_account_payload(payload(min_order_value=5000, max_order_value=5000))
    assert ok is False
    assert any("min_order_value must be less than max_order_value" in e for e in errors)


def test_field_bounds():
    for bad in ({"leverage": 11}, {"leverage": 0.5}, {"max_position_size": 0}, {"max_position_size": 1.5},
                {"risk_on_capital": 6}, {"available_funds": -1}, {"limit_buffer_percentage": 11},
                {"order_type": "STOP"}):
        ok, errors = validate_account_payload(payload(**bad))
        assert ok is False, bad
        assert errors


def test_trailing_jump_must_be_tick_multiple_when_enabled():
    ok, errors = validate_account_payload(payload(enable_trailing_stop_loss=True, min_trail_jump=0.07))
    assert ok is False
    assert any("multiple of 0.05" in e for e in errors)

    ok, _ = validate_account_payload(payload(enable_trailing_stop_loss=True, min_trail_jump=1.25))
    assert ok is True

    # ignored while trailing is off
    ok, _ = validate_account_payload(payload(enable_trailing_stop_loss=False, min_trail_jump=0.07))
    assert ok is True


def test_account_is_immutable():
    account = make_account()
    with pytest.raises(ValidationError):
        account.available_funds = 1


def test_token_is_masked():
    account = make_account(access_token="abcd1234efgh5678")
    assert account.masked_token == "abcd...5678"
    assert "abcd1234efgh5678" not in repr(account)


def test_env_accounts_have_no_upper_bound():
    environ = {}
    for i in range(1, 8):
        environ[f"DHAN_CLIENT_ID_{i}"] = f"11000000{i:02d}"
        environ[f"DHAN_ACCESS_TOKEN_{i}"] = f"token-{i}"
    environ["AVAILABLE_FUNDS_3"] = "75000"
    environ["ORDER_TYPE_3"] = "limit"
    environ["ALLOW_DUPLICATE_TICKERS_5"] = "TRUE"

    accounts = load_accounts_from_env(environ)

    assert [a.account_id for a in accounts] == [1, 2, 3, 4, 5, 6, 7]
    assert accounts[2].available_funds == 75000
    assert accounts[2].order_type == "LIMIT"
    assert accounts[4].allow_duplicate_tickers is True
    assert accounts[0].allow_duplicate_tickers is False


def test_env_scan_stops_at_first_gap():
    environ = {
        "DHAN_CLIENT_ID_1": "1", "DHAN_ACCESS_TOKEN_1": "t1",
        "DHAN_CLIENT_ID_3": "3", "DHAN_ACCESS_TOKEN_3": "t3",
    }
    assert [a.account_id for a in load_accounts_from_env(environ)] == [1]


def test_env_invalid_or_incomplete_accounts_are_skipped():
    environ = {
        "DHAN_CLIENT_ID_1": "1", "DHAN_ACCESS_TOKEN_1": "t1", "LEVERAGE_1": "20",
        "DHAN_CLIENT_ID_2": "2",
        "DHAN_CLIENT_ID_3": "3", "DHAN_ACCESS_TOKEN_3": "t3",
    }
    assert [a.account_id for a in load_accounts_from_env(environ)] == [3]


def test_env_non_numeric_value_only_skips_that_account():
    environ = {
        "DHAN_CLIENT_ID_1": "1", "DHAN_ACCESS_TOKEN_1": "t1",
        "DHAN_CLIENT_ID_2": "2", "DHAN_ACCESS_TOKEN_2": "t2", "LEVERAGE_2": "abc",
        "DHAN_CLIENT_ID_3": "3", "DHAN_ACCESS_TOKEN_3": "t3", "IS_ACTIVE_3": "maybe",
    }
    assert [a.account_id for a in load_accounts_from_env(environ)] == [1]


def test_env_legacy_single_account():
    accounts = load_accounts_from_env({"DHAN_CLIENT_ID": "1100000001", "DHAN_ACCESS_TOKEN": "tok"})
    assert len(accounts) == 1
    assert accounts[0].account_id == 1
    assert accounts[0].client_id == "1100000001"


def test_stored_settings_take_precedence_over_env():
    db = create_session()
    row, errors = upsert_account_settings(db, AccountSettingsIn(dhan_client_id="1100000009", dhan_access_token="tok"))
    assert errors == []

    accounts = load_accounts(db, {"DHAN_CLIENT_ID_1": "1", "DHAN_ACCESS_TOKEN_1": "t1"})
    assert [a.client_id for a in accounts] == ["1100000009"]
    assert accounts[0].account_id == row.id
    db.close()


def test_env_used_when_store_empty():
    db = create_session()
    accounts = load_accounts(db, {"DHAN_CLIENT_ID_1": "1", "DHAN_ACCESS_TOKEN_1": "t1"})
    assert [a.client_id for a in accounts] == ["1"]
    db.close()


def test_upsert_updates_existing_client():
    db = create_session()
    upsert_account_settings(db, AccountSettingsIn(dhan_client_id="1100000009", dhan_access_token="tok"))
    row, errors = upsert_account_settings(
        db, AccountSettingsIn(dhan_client_id="1100000009", dhan_access_token="tok2", leverage=3, order_type="limit")
    )
    assert errors == []
    assert db.query(AccountSettings).count() == 1
    assert row.leverage == 3
    assert row.order_type == "LIMIT"
    db.close()


def test_upsert_rejects_invalid_settings():
    db = create_session()
    row, errors = upsert_account_settings(
        db, AccountSettingsIn(dhan_client_id="1100000009", dhan_access_token="tok",
                              min_order_value=60000, max_order_value=50000)
    )
    assert row is None
    assert errors
    assert db.query(AccountSettings).count() == 0
    db.close()


def test_invalid_stored_row_is_skipped():
    db = create_session()
    db.add(AccountSettings(dhan_client_id="bad", dhan_access_token="tok", leverage=50))
    db.add(AccountSettings(dhan_client_id="good", dhan_access_token="tok"))
    db.commit()

    assert [a.client_id for a in load_accounts(db)] == ["good"]
    db.close()


def test_summarize_accounts():
    accounts = [make_account(), make_account(account_id=2, client_id="2", available_funds=10000, is_active=False)]
    summary = summarize_accounts(accounts)
    assert summary["total_accounts"] == 2
    assert summary["active_accounts"] == 1
    assert summary["total_available_funds"] == 30000
    assert summary["total_leveraged_funds"] == 60000
    assert summary["accounts"][0]["access_token"] == "toke...3456"
