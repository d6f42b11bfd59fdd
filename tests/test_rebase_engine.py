import asyncio

from fakes import FakeBroker, FakeSleep, filled, make_account, pending
from signal_router.config import settings
from signal_router.services.broker import BrokerBusinessError, BrokerNetworkError, BrokerTimeout, NotReady
from signal_router.services.order_store import InMemoryOrderStore, OrderRecord
from signal_router.services.rebase import RebaseEngine, RebaseQueueItem, RebaseStatus


def make_engine(broker, sleep=None, **kwargs):
    values = dict(initial_delay=5, attempt_delay=2, max_attempts=8, network_backoff=(1, 2, 4),
                  results_cap=50, fallback_to_alert_price=False)
    values.update(kwargs)
    return RebaseEngine(lambda account: broker, sleep=sleep or FakeSleep(), **values)


def make_item(order_id="ORD1", signal="BUY", price=100.0, account=None, **kwargs):
    return RebaseQueueItem(order_id=order_id, account=account or make_account(), original_alert_price=price,
                           signal=signal, original_target_price=101.5, original_stop_loss_price=99.0, **kwargs)


def test_buy_fill_rebases_both_legs():
    broker = FakeBroker(details=[pending(), filled(100.5)])
    sleep = FakeSleep()
    engine = make_engine(broker, sleep)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.CORRECTED
    assert result.success is True
    assert result.actual_entry_price == 100.5
    assert result.new_tp == 102.0
    assert result.new_sl == 99.5
    assert result.original_tp == 101.5
    assert result.original_sl == 99.0
    assert result.attempts == 2
    assert sleep.calls == [5, 2]
    assert broker.target_updates == [("ORD1", "1100000001", 102.0)]
    assert broker.stop_updates == [("ORD1", "1100000001", 99.5, None)]


def test_sell_fill_puts_target_below_and_stop_above():
    broker = FakeBroker(details=[filled(99.5)])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item(signal="SELL")))

    assert result.status == RebaseStatus.CORRECTED
    assert result.new_tp == 98.0
    assert result.new_sl == 100.5
    assert result.new_tp < result.actual_entry_price < result.new_sl


def test_exhausted_after_max_attempts():
    broker = FakeBroker()
    sleep = FakeSleep()
    engine = make_engine(broker, sleep, max_attempts=5)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.EXHAUSTED
    assert result.success is False
    assert result.message == "no valid entry price after 5 attempts"
    assert broker.polls == 5
    assert result.attempts == 5
    # initial delay, then one inter-attempt delay between each poll
    assert sleep.calls == [5, 2, 2, 2, 2]
    assert broker.target_updates == []
    assert broker.stop_updates == []


def test_never_polls_more_than_max_attempts():
    for max_attempts in (1, 3, 8):
        broker = FakeBroker()
        engine = make_engine(broker, max_attempts=max_attempts)
        asyncio.run(engine.process_item(make_item()))
        assert broker.polls == max_attempts


def test_small_deviation_is_skipped_without_updates():
    broker = FakeBroker(details=[filled(100.05)])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.SKIPPED
    assert result.success is True
    assert result.actual_entry_price == 100.05
    assert broker.target_updates == []
    assert broker.stop_updates == []


def test_network_errors_back_off_without_consuming_attempts():
    broker = FakeBroker(details=[BrokerTimeout("slow"), BrokerNetworkError("reset"), filled(100.5)])
    sleep = FakeSleep()
    engine = make_engine(broker, sleep)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.CORRECTED
    assert result.attempts == 1
    assert sleep.calls == [5, 1, 2]


def test_network_backoff_exhaustion_counts_as_one_attempt():
    errors = [BrokerNetworkError("reset")] * 4
    broker = FakeBroker(details=errors + [filled(100.5)])
    sleep = FakeSleep()
    engine = make_engine(broker, sleep)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.CORRECTED
    assert result.attempts == 2
    assert sleep.calls == [5, 1, 2, 4, 2]


def test_business_error_consumes_an_attempt():
    broker = FakeBroker(details=[BrokerBusinessError("order not found", 404), filled(100.5)])
    sleep = FakeSleep()
    engine = make_engine(broker, sleep)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.CORRECTED
    assert result.attempts == 2
    assert sleep.calls == [5, 2]


def test_terminal_broker_status_stops_polling():
    rejected = NotReady("order REJECTED at broker", status="REJECTED", terminal=True)
    broker = FakeBroker(details=[rejected, filled(100.5)])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.FAILED
    assert "REJECTED" in result.message
    assert broker.polls == 1


def test_partial_when_stop_loss_update_fails():
    broker = FakeBroker(details=[filled(100.5)], stop_errors=[BrokerBusinessError("leg not modifiable")])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.PARTIAL
    assert result.success is False
    assert result.target_updated is True
    assert result.stop_loss_updated is False
    assert "leg not modifiable" in result.message


def test_partial_when_target_update_fails():
    broker = FakeBroker(details=[filled(100.5)], target_errors=[BrokerBusinessError("bad target")])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.PARTIAL
    assert result.target_updated is False
    assert result.stop_loss_updated is True
    # the stop-loss leg is still pushed
    assert len(broker.stop_updates) == 1


def test_failed_when_both_updates_fail():
    broker = FakeBroker(details=[filled(100.5)], target_errors=[BrokerBusinessError("no")],
                        stop_errors=[BrokerBusinessError("no")])
    engine = make_engine(broker)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.FAILED
    assert result.target_updated is False
    assert result.stop_loss_updated is False


def test_update_network_errors_are_retried():
    broker = FakeBroker(details=[filled(100.5)], target_errors=[BrokerTimeout("slow")])
    sleep = FakeSleep()
    engine = make_engine(broker, sleep)

    result = asyncio.run(engine.process_item(make_item()))

    assert result.status == RebaseStatus.CORRECTED
    assert len(broker.target_updates) == 2
    assert sleep.calls == [5, 1]


def test_trailing_jump_is_resent_with_stop_loss():
    account = make_account(enable_trailing_stop_loss=True, min_trail_jump=0.5)
    broker = FakeBroker(details=[filled(100.5)])
    engine = make_engine(broker)

    asyncio.run(engine.process_item(make_item(account=account)))

    assert broker.stop_updates == [("ORD1", "1100000001", 99.5, 0.5)]


def test_fallback_to_alert_price():
    account = make_account(rebase_threshold_percentage=0)
    broker = FakeBroker()
    engine = make_engine(broker, max_attempts=3, fallback_to_alert_price=True)

    result = asyncio.run(engine.process_item(make_item(account=account)))

    assert result.status == RebaseStatus.CORRECTED
    assert result.actual_entry_price == 100.0
    assert result.new_tp == 101.5
    assert result.new_sl == 99.0
    assert result.message.startswith("alert price used as entry")


def test_engine_attempt_limit_applies_above_settings_default(monkeypatch):
    monkeypatch.setattr(settings, "REBASE_MAX_ATTEMPTS", 8)
    broker = FakeBroker()
    engine = make_engine(broker, max_attempts=12)

    item = make_item()
    result = asyncio.run(engine.process_item(item))

    assert item.max_attempts == 12
    assert broker.polls == 12
    assert result.message == "no valid entry price after 12 attempts"


def test_item_attempt_limit_overrides_engine_default():
    broker = FakeBroker()
    engine = make_engine(broker, max_attempts=2)

    item = make_item(max_attempts=4)
    asyncio.run(engine.process_item(item))

    assert broker.polls == 4


def test_worker_keeps_draining_after_a_failure():
    class ExplodingBroker(FakeBroker):
        async def get_order_details(self, order_id):
            raise RuntimeError("boom")

    brokers = {1: ExplodingBroker(), 2: FakeBroker(details=[filled(100.5)])}
    seen = []

    async def on_result(result):
        seen.append(result.order_id)

    async def scenario():
        engine = RebaseEngine(lambda account: brokers[account.account_id], initial_delay=0, attempt_delay=0,
                              max_attempts=3, network_backoff=(), sleep=FakeSleep(), on_result=on_result)
        engine.start()
        assert engine.enqueue(make_item("A", account=make_account(account_id=1)))
        assert engine.enqueue(make_item("B", account=make_account(account_id=2, client_id="1100000002")))
        await engine.wait_until_idle(timeout=5)
        status = engine.get_queue_status()
        await engine.stop()
        return engine, status

    engine, status = asyncio.run(scenario())

    results = engine.get_results()
    assert [r.order_id for r in results] == ["A", "B"]
    assert results[0].status == RebaseStatus.FAILED
    assert "boom" in results[0].message
    assert results[1].status == RebaseStatus.CORRECTED
    assert seen == ["A", "B"]
    assert status == {"queue_length": 0, "is_processing": False, "result_count": 2}
    assert [r.order_id for r in engine.get_results_for_order("B")] == ["B"]


def test_result_callback_failure_does_not_stop_worker():
    async def broken_callback(result):
        raise RuntimeError("socket closed")

    async def scenario():
        engine = RebaseEngine(lambda account: FakeBroker(details=[filled(100.5)]), initial_delay=0,
                              attempt_delay=0, max_attempts=1, network_backoff=(), sleep=FakeSleep(),
                              on_result=broken_callback)
        engine.start()
        engine.enqueue(make_item("A"))
        engine.enqueue(make_item("B"))
        await engine.wait_until_idle(timeout=5)
        await engine.stop()
        return engine

    engine = asyncio.run(scenario())
    assert len(engine.get_results()) == 2


def test_enqueue_ignores_duplicates_and_disabled_accounts():
    async def scenario():
        engine = make_engine(FakeBroker())
        assert engine.enqueue(make_item("A")) is True
        assert engine.enqueue(make_item("A")) is False
        assert engine.enqueue(make_item("B", account=make_account(rebase_tp_and_sl=False))) is False
        return engine.get_queue_status()

    assert asyncio.run(scenario())["queue_length"] == 1


def test_results_are_capped_oldest_first():
    async def scenario():
        engine = RebaseEngine(lambda account: FakeBroker(details=[filled(100.05)]), initial_delay=0,
                              attempt_delay=0, max_attempts=1, network_backoff=(), results_cap=2,
                              sleep=FakeSleep())
        engine.start()
        for order_id in ("A", "B", "C"):
            engine.enqueue(make_item(order_id))
        await engine.wait_until_idle(timeout=5)
        await engine.stop()
        return engine

    engine = asyncio.run(scenario())
    assert [r.order_id for r in engine.get_results()] == ["B", "C"]
    assert engine.clear_results() == 2
    assert engine.get_results() == []


def test_queue_is_not_recovered_by_a_new_engine():
    async def scenario():
        broker = FakeBroker()
        first = make_engine(broker)
        first.enqueue(make_item("A"))
        assert first.get_queue_status()["queue_length"] == 1
        # process restart: queued items only lived in the old instance
        second = make_engine(broker)
        return second.get_queue_status(), second.get_results()

    status, results = asyncio.run(scenario())
    assert status["queue_length"] == 0
    assert results == []


def test_result_to_dict():
    broker = FakeBroker(details=[filled(100.5)])
    result = asyncio.run(make_engine(broker).process_item(make_item()))
    data = result.to_dict()
    assert data["status"] == "corrected"
    assert data["success"] is True
    assert data["new_tp"] == 102.0
    assert isinstance(data["timestamp"], str)


def test_terminal_broker_status_updates_stored_order():
    store = InMemoryOrderStore()
    for order_id in ("A", "B", "C"):
        store.add(OrderRecord(order_id=order_id, account_id=1, client_id="1100000001", ticker="RELIANCE",
                              signal="BUY", requested_quantity=10, alert_price=100.0))
    details = {
        "A": NotReady("order CANCELLED at broker", status="CANCELLED", terminal=True),
        "B": NotReady("order REJECTED at broker", status="REJECTED", terminal=True),
        "C": filled(100.5, order_id="C"),
    }

    class StatusBroker(FakeBroker):
        async def get_order_details(self, order_id):
            return details[order_id]

    async def scenario():
        engine = RebaseEngine(lambda account: StatusBroker(), initial_delay=0, attempt_delay=0,
                              max_attempts=3, network_backoff=(), sleep=FakeSleep(), order_store=store)
        engine.start()
        for order_id in ("A", "B", "C"):
            engine.enqueue(make_item(order_id))
        await engine.wait_until_idle(timeout=5)
        await engine.stop()
        return engine

    engine = asyncio.run(scenario())

    statuses = {o.order_id: o.status for o in store.list_orders()}
    assert statuses == {"A": "cancelled", "B": "failed", "C": "placed"}
    assert engine.get_results_for_order("B")[0].broker_status == "REJECTED"
    assert "REJECTED" in store.list_orders(status="failed")[0].error
