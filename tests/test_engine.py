from typing import Any, List, Tuple

import numpy as np
import pytest

from estclient.correlation.engine import CorrelationEngine
from estclient.correlation.models import ResultRecord, WorkItem
from estclient.errors import DuplicateKeyError, EngineClosedError, LotTimeoutError, MalformedItemError
from estclient.monitoring.metrics import sample
from estclient.transport.base import RecordingTransport
from estclient.utils.config import EngineConfig


def make_engine(**kwargs: Any) -> Tuple[CorrelationEngine, RecordingTransport]:
    transport = RecordingTransport()
    engine = CorrelationEngine(transport, **kwargs)
    engine.mark_ready()
    return engine, transport


def item(cnt: int, prob: bool = False, rid: int = 1) -> dict:
    return {"cnt": cnt, "prob": prob, "rid": rid, "vars": [1.0, 2.0]}


def reply(cnt: int, prob: bool = False, rid: int = 1, est: float = 0.0) -> dict:
    return {"cnt": cnt, "prob": prob, "rid": rid, "est": est}


def test_batched_round_trip_keeps_reply_order() -> None:
    engine, transport = make_engine()
    handle = engine.submit([item(0), item(1), item(2)], info={"tag": "abc"})

    assert len(transport.frames) == 1
    kind, payload = transport.frames[0]
    assert kind == "OBJECT"
    assert [obj["cnt"] for obj in payload] == [0, 1, 2]
    assert not handle.done()

    engine.on_delivery([reply(0, est=10), reply(1, est=11), reply(2, est=12)])

    result = handle.result(timeout=0)
    assert [record.est for record in result.records] == [10, 11, 12]
    assert result.info == {"tag": "abc"}
    assert engine.pending_count == 0
    assert len(engine.registry) == 0


def test_unbatched_lot_completes_once_in_arrival_order() -> None:
    engine, transport = make_engine()
    calls: List[Tuple[List[ResultRecord], Any]] = []
    handle = engine.submit(
        [item(0), item(1), item(2)],
        info="lot",
        batched=False,
        callback=lambda records, info: calls.append((records, info)),
    )

    assert [len(payload) for payload in transport.payloads] == [1, 1, 1]

    engine.on_delivery([reply(0)])
    engine.on_delivery([reply(2)])
    assert not handle.done()
    assert calls == []

    engine.on_delivery([reply(1)])
    assert handle.done()
    assert len(calls) == 1
    records, info = calls[0]
    assert [record.cnt for record in records] == [0, 2, 1]
    assert info == "lot"

    engine.on_delivery([reply(1)])
    assert len(calls) == 1


def test_unknown_key_is_discarded() -> None:
    engine, _ = make_engine()
    calls: list = []
    handle = engine.submit([item(3)], callback=lambda records, info: calls.append(records))
    before = sample("estclient_messages_delivered_total", {"outcome": "unknown"})

    engine.on_delivery([reply(4)])

    assert sample("estclient_messages_delivered_total", {"outcome": "unknown"}) == before + 1
    assert not handle.done()
    assert calls == []
    assert engine.registry.get_lot(handle.lot_id).accumulated == []
    assert engine.pending_count == 1


def test_duplicate_key_abandons_first_lot() -> None:
    engine, transport = make_engine()
    before = sample("estclient_duplicate_keys_total")
    first = engine.submit([item(5)], info="first")
    second = engine.submit([item(5)], info="second")

    assert len(transport.frames) == 2
    assert sample("estclient_duplicate_keys_total") == before + 1

    engine.on_delivery([reply(5, est=1.5)])
    assert second.result(timeout=0).info == "second"
    assert not first.done()

    engine.on_delivery([reply(5, est=1.5)])
    assert not first.done()
    assert engine.pending_count == 1


def test_strict_keys_rejects_duplicate_before_sending() -> None:
    engine, transport = make_engine(strict_keys=True)
    engine.submit([item(5)])
    with pytest.raises(DuplicateKeyError):
        engine.submit([item(6), item(5)], batched=False)
    assert len(transport.frames) == 1
    assert engine.pending_count == 1


def test_malformed_items_are_not_sent() -> None:
    engine, transport = make_engine()
    with pytest.raises(MalformedItemError):
        engine.submit([item(0), {"cnt": 1, "prob": False, "vars": []}])
    with pytest.raises(MalformedItemError):
        engine.submit([item(0, rid=128)])
    with pytest.raises(MalformedItemError):
        engine.submit([])
    assert transport.frames == []
    assert engine.pending_count == 0


def test_control_and_malformed_messages_leave_state_alone() -> None:
    engine, _ = make_engine()
    handle = engine.submit([item(0)])

    engine.on_delivery({"type": "keep-alive"})
    engine.on_delivery({"unexpected": True})
    engine.on_delivery([])
    engine.on_delivery([{"cnt": 0, "prob": False}])
    engine.on_frame("not json {")

    assert not handle.done()
    assert engine.pending_count == 1


def test_on_frame_decodes_json() -> None:
    engine, _ = make_engine()
    handle = engine.submit([item(9, prob=True, rid=2)])
    engine.on_frame('[{"cnt": 9, "prob": true, "rid": 2, "ests": [0.25, 0.75]}]')
    assert handle.result(timeout=0).records[0].ests == [0.25, 0.75]


def test_expire_fails_stale_lots() -> None:
    now = [0.0]
    engine, _ = make_engine(lot_timeout_s=5.0, clock=lambda: now[0])
    handle = engine.submit([item(0)])

    now[0] = 4.0
    assert engine.expire() == []
    now[0] = 6.0
    assert engine.expire() == [handle.lot_id]
    assert isinstance(handle.future.exception(timeout=0), LotTimeoutError)

    engine.on_delivery([reply(0)])
    assert engine.pending_count == 0


def test_delivery_expires_before_matching() -> None:
    now = [0.0]
    engine, _ = make_engine(lot_timeout_s=1.0, clock=lambda: now[0])
    handle = engine.submit([item(0)])
    now[0] = 2.0
    engine.on_delivery([reply(0)])
    assert isinstance(handle.future.exception(timeout=0), LotTimeoutError)


def test_cancel_abandons_lot() -> None:
    engine, _ = make_engine()
    handle = engine.submit([item(0)])
    assert engine.cancel(handle.lot_id) is True
    assert handle.future.cancelled()
    assert engine.cancel(handle.lot_id) is False
    engine.on_delivery([reply(0)])
    assert engine.pending_count == 0


def test_shutdown_cancels_pending_and_refuses_submissions() -> None:
    engine, _ = make_engine()
    handle = engine.submit([item(0)])
    engine.shutdown()
    assert handle.future.cancelled()
    assert engine.closed
    with pytest.raises(EngineClosedError):
        engine.submit([item(1)])


def test_failing_callback_does_not_break_engine() -> None:
    engine, _ = make_engine()

    def boom(records: list, info: Any) -> None:
        raise RuntimeError("caller bug")

    first = engine.submit([item(0)], callback=boom)
    second = engine.submit([item(1)])
    engine.on_delivery([reply(0)])
    engine.on_delivery([reply(1)])
    assert first.done()
    assert second.done()


def test_send_failure_retires_lot() -> None:
    class BrokenTransport:
        def send(self, kind: str, payload: Any) -> None:
            raise ConnectionError("closed")

    engine = CorrelationEngine(BrokenTransport())
    with pytest.raises(ConnectionError):
        engine.submit([item(0)])
    assert engine.pending_count == 0
    assert len(engine.registry) == 0


def test_wait_ready() -> None:
    engine = CorrelationEngine(RecordingTransport())
    assert engine.wait_ready(timeout=0.01) is False
    engine.mark_ready()
    assert engine.wait_ready(timeout=0.01) is True


def test_from_config() -> None:
    cfg = EngineConfig(message_kind="OBJ", lot_timeout_s=2.5, strict_keys=True)
    engine = CorrelationEngine.from_config(RecordingTransport(), cfg)
    assert engine.message_kind == "OBJ"
    assert engine.lot_timeout_s == 2.5
    assert engine.registry.strict_keys is True


def test_work_item_flattens_numpy_vars() -> None:
    obj = WorkItem(cnt=1, prob=False, rid=3, vars=np.array([[1, 2], [3, 4]]))
    assert obj.vars == [1.0, 2.0, 3.0, 4.0]
    assert obj.to_payload() == {"cnt": 1, "prob": False, "rid": 3, "vars": [1.0, 2.0, 3.0, 4.0], "reset": False}


def test_result_record_keeps_extra_fields() -> None:
    vector = ResultRecord(cnt=0, prob=True, rid=1, ests=[0.2, 0.8], train=True)
    assert vector.model_dump()["train"] is True


def test_cancelling_handle_drops_late_reply() -> None:
    engine, _ = make_engine()
    calls: list = []
    handle = engine.submit([item(0)], callback=lambda records, info: calls.append(records))
    assert handle.future.cancel()
    before = sample("estclient_lots_finished_total", {"outcome": "cancelled"})

    engine.on_delivery([reply(0)])

    assert calls == []
    assert engine.pending_count == 0
    assert len(engine.registry) == 0
    assert sample("estclient_lots_finished_total", {"outcome": "cancelled"}) == before + 1


def test_integer_vars_stay_integers_on_the_wire() -> None:
    engine, transport = make_engine()
    engine.submit([{"cnt": 0, "prob": False, "rid": 1, "vars": [64, 128]}])
    sent = transport.payloads[0][0]["vars"]
    assert sent == [64, 128]
    assert all(isinstance(value, int) for value in sent)
