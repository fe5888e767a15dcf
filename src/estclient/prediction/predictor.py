"""Next-value prediction over a sliding window of observed values."""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from estclient.correlation.engine import CorrelationEngine
from estclient.correlation.models import MAX_CNT, ResultRecord, WorkItem
from estclient.errors import DomainError, MalformedEstimateError
from estclient.utils.config import PredictorConfig
from estclient.utils.logging import get_logger

LOG = get_logger(__name__)

Estimate = Union[float, List[float]]
PredictionCallback = Callable[[Estimate, Any], None]

# Symbols are spread over the estimator's 0..255 input range.
VALUE_MAP: Dict[int, int] = {0: 64, 1: 128, 2: 192}


def map_value(value: int) -> int:
    if isinstance(value, bool) or value not in VALUE_MAP:
        raise DomainError(f"History value {value!r} is out of range")
    return VALUE_MAP[value]


def decode_estimate(records: List[ResultRecord]) -> Optional[Estimate]:
    """Return the prediction held by a completion, or None for a training acknowledgement."""
    if len(records) != 1:
        raise MalformedEstimateError(f"Received malformed estimate: expected 1 record, got {len(records)}")
    record = records[0]
    if record.is_training:
        return None
    estimate = record.ests if record.prob else record.est
    if estimate is None:
        field = "ests" if record.prob else "est"
        raise MalformedEstimateError(f"Received malformed estimate: missing '{field}' for cnt {record.cnt}")
    return estimate


class SequentialPredictor:
    """Predicts the next value of a stream from its previous ``depth`` values.

    Predictions use even sequence numbers and training objects use odd ones, so
    a stream normally alternates ``predict()`` and ``observe(value)``. Each
    request returns its own future, which fails with ``MalformedEstimateError``
    if the estimator's reply cannot be decoded.
    """

    def __init__(
        self,
        depth: int,
        probabilistic: bool,
        engine: CorrelationEngine,
        prediction_callback: Optional[PredictionCallback] = None,
        ready_callback: Optional[Callable[[], None]] = None,
        uid: int = 55,
        rid: int = 33,
    ) -> None:
        if depth < 1:
            raise ValueError("depth must be at least 1")
        self.depth = depth
        self.probabilistic = probabilistic
        self.engine = engine
        self.prediction_callback = prediction_callback
        self.uid = uid
        self.rid = rid
        self.history: Deque[int] = deque(maxlen=depth)
        self.cnt = 0
        self._sent = False
        if ready_callback is not None:
            engine.ready.add_done_callback(lambda fut: None if fut.cancelled() else ready_callback())

    @classmethod
    def from_config(
        cls,
        config: PredictorConfig,
        engine: CorrelationEngine,
        prediction_callback: Optional[PredictionCallback] = None,
        ready_callback: Optional[Callable[[], None]] = None,
    ) -> "SequentialPredictor":
        return cls(
            depth=config.depth,
            probabilistic=config.probabilistic,
            engine=engine,
            prediction_callback=prediction_callback,
            ready_callback=ready_callback,
            uid=config.uid,
            rid=config.rid,
        )

    def observe(self, value: int) -> Optional["Future[Optional[Estimate]]"]:
        """Record an actual value, training the estimator on it once enough history exists.

        If the training object cannot be sent the history is left unchanged.
        """
        map_value(value)
        future = None
        # The first training object carries depth - 1 values; later ones and
        # every prediction carry depth.
        if self.history and len(self.history) + 1 >= self.depth:
            future = self._send(train=value)
        self.history.append(value)
        return future

    def predict(self, info: Any = None) -> bool:
        """Request a prediction of the next value. Returns False if history is too short."""
        return self.request_prediction(info) is not None

    def request_prediction(self, info: Any = None) -> Optional["Future[Optional[Estimate]]"]:
        if len(self.history) < self.depth:
            LOG.info("Insufficient history for a prediction", extra={"have": len(self.history), "depth": self.depth})
            return None
        return self._send(info=info)

    def _next_cnt(self, train: bool) -> int:
        cnt = self.cnt
        if (cnt % 2 == 1) != train:
            cnt = (cnt + 1) % (MAX_CNT + 1)
        return cnt

    def _send(self, train: Optional[int] = None, info: Any = None) -> "Future[Optional[Estimate]]":
        item = WorkItem(
            cnt=self._next_cnt(train is not None),
            prob=self.probabilistic,
            rid=self.rid,
            uid=self.uid,
            vars=[map_value(v) for v in self.history],
            reset=not self._sent,
            train=train,
        )
        future: Future[Optional[Estimate]] = Future()
        handle = self.engine.submit(
            [item],
            info=info,
            callback=lambda records, lot_info: self._on_complete(future, records, lot_info),
        )
        self.cnt = (item.cnt + 1) % (MAX_CNT + 1)
        self._sent = True
        handle.future.add_done_callback(lambda lot_future: _propagate_failure(lot_future, future))
        return future

    def _on_complete(self, future: "Future[Optional[Estimate]]", records: List[ResultRecord], info: Any) -> None:
        if future.cancelled():
            LOG.debug("Dropping estimate for a cancelled request", extra={"records": len(records)})
            return
        try:
            estimate = decode_estimate(records)
        except MalformedEstimateError as exc:
            LOG.error("Malformed estimate", extra={"error": str(exc)})
            future.set_exception(exc)
            return
        future.set_result(estimate)
        if estimate is not None and self.prediction_callback is not None:
            self.prediction_callback(estimate, info)


def _propagate_failure(lot_future: "Future[Any]", future: "Future[Optional[Estimate]]") -> None:
    if future.done():
        return
    if lot_future.cancelled():
        future.cancel()
    elif lot_future.exception() is not None:
        future.set_exception(lot_future.exception())
