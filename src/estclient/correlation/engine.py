"""Request/response correlation for the estimator message channel."""

from __future__ import annotations

import json
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from estclient.correlation.models import CompletionHandle, Lot, LotCallback, LotResult, ResultRecord, WorkItem
from estclient.correlation.registry import LotRegistry
from estclient.errors import DuplicateKeyError, EngineClosedError, LotTimeoutError, MalformedItemError, UnknownKeyError
from estclient.monitoring.metrics import LOTS_SUBMITTED, MESSAGES_SENT, PENDING_LOTS, observe_delivery, observe_finished
from estclient.transport.base import Transport
from estclient.utils.config import EngineConfig
from estclient.utils.logging import get_logger

LOG = get_logger(__name__)


class CorrelationEngine:
    """Sends lots of work items and matches estimator replies back to them.

    Every physical message is registered under the key of its last item. A reply
    is matched by the key of its last record, appended to the lot it belongs to,
    and the lot completes once it has accumulated as many records as it had
    items. Replies are accumulated in arrival order.

    The engine is single-threaded: ``submit`` and ``on_delivery`` must be called
    from the same thread or event loop.
    """

    def __init__(
        self,
        transport: Transport,
        message_kind: str = "OBJECT",
        lot_timeout_s: Optional[float] = None,
        strict_keys: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.message_kind = message_kind
        self.lot_timeout_s = lot_timeout_s
        self.registry = LotRegistry(strict_keys=strict_keys, clock=clock)
        self.ready: Future[None] = Future()
        self._closed = False

    @classmethod
    def from_config(cls, transport: Transport, config: EngineConfig, **kwargs: Any) -> "CorrelationEngine":
        return cls(
            transport,
            message_kind=config.message_kind,
            lot_timeout_s=config.lot_timeout_s,
            strict_keys=config.strict_keys,
            **kwargs,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self.registry.pending_lots())

    def mark_ready(self) -> None:
        """Called by the channel once it is open."""
        if not self.ready.done():
            self.ready.set_result(None)
            LOG.info("Estimator channel ready")

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            self.ready.result(timeout=timeout)
        except FuturesTimeoutError:
            return False
        return True

    def submit(
        self,
        items: Sequence[WorkItem | Mapping[str, Any]],
        info: Any = None,
        batched: bool = True,
        callback: Optional[LotCallback] = None,
    ) -> CompletionHandle:
        """Send ``items`` as one lot.

        With ``batched`` the items travel in a single message. Otherwise each item
        is sent on its own, which lets other traffic interleave with the lot and
        so gives up atomicity of the estimator's model state across the items.
        """
        if self._closed:
            raise EngineClosedError("Cannot submit to a closed engine")
        objects = self._validate(items)
        groups = [objects] if batched else [[obj] for obj in objects]
        if self.registry.strict_keys:
            self._check_keys(groups)
        if not self.ready.done():
            LOG.warning("Submitting before the estimator channel is ready")

        lot = self.registry.new_lot(len(objects), info=info, callback=callback)
        try:
            for group in groups:
                self.registry.register(group[-1].key, lot)
                self.transport.send(self.message_kind, [obj.to_payload() for obj in group])
                MESSAGES_SENT.inc()
        except Exception as exc:
            self.registry.retire(lot.lot_id)
            lot.future.set_exception(exc)
            raise
        LOTS_SUBMITTED.labels(mode="batched" if batched else "unbatched").inc()
        PENDING_LOTS.set(self.pending_count)
        LOG.debug(
            "Submitted lot",
            extra={"lot": lot.lot_id, "objects": len(objects), "messages": len(groups)},
        )
        return CompletionHandle(lot_id=lot.lot_id, future=lot.future)

    def on_frame(self, text: str | bytes) -> None:
        """Decode one raw JSON frame from the channel and deliver it."""
        try:
            message = json.loads(text)
        except ValueError:
            observe_delivery("undecodable")
            LOG.warning("Failed to parse returned json string", extra={"frame": str(text)[:200]})
            return
        self.on_delivery(message)

    def on_delivery(self, message: Any) -> None:
        """Handle one decoded inbound message, in the order received."""
        self.expire()
        if isinstance(message, Mapping):
            if "type" in message:
                observe_delivery("control")
                LOG.info("Received message", extra={"type": message["type"]})
            else:
                observe_delivery("malformed")
                LOG.warning("Discarding message with neither a type nor results")
            return
        if isinstance(message, (str, bytes)) or not isinstance(message, Sequence) or not message:
            observe_delivery("malformed")
            LOG.warning("Discarding message that is not a list of results")
            return
        try:
            records = [ResultRecord.model_validate(raw) for raw in message]
        except ValidationError as exc:
            observe_delivery("malformed")
            LOG.warning(
                "Estimator response object does not contain proper properties",
                extra={"error": str(exc)},
            )
            return

        key = records[-1].key
        try:
            lot = self.registry.lookup(key)
        except UnknownKeyError:
            observe_delivery("unknown")
            LOG.warning("Estimator response object is not pending", extra={"key": list(key)})
            return

        lot.accumulated.extend(records)
        self.registry.remove(key)
        observe_delivery("matched")
        if lot.future.cancelled():
            self._finish(lot, "cancelled")
        elif lot.complete:
            self._complete(lot)

    def cancel(self, lot_id: int) -> bool:
        """Abandon a pending lot. Returns False if it is not pending."""
        lot = self.registry.get_lot(lot_id)
        if lot is None:
            return False
        lot.future.cancel()
        self._finish(lot, "cancelled")
        return True

    def expire(self, now: Optional[float] = None) -> List[int]:
        """Fail every lot that has been pending longer than the lot timeout."""
        if self.lot_timeout_s is None:
            return []
        expired: List[int] = []
        for lot in self.registry.stale_lots(self.lot_timeout_s, now=now):
            if not lot.future.done():
                lot.future.set_exception(
                    LotTimeoutError(f"Lot {lot.lot_id} got no complete reply within {self.lot_timeout_s}s")
                )
            self._finish(lot, "expired")
            LOG.warning(
                "Lot timed out",
                extra={"lot": lot.lot_id, "received": len(lot.accumulated), "expected": lot.expected_count},
            )
            expired.append(lot.lot_id)
        return expired

    def shutdown(self) -> None:
        """Cancel every pending lot and refuse further submissions."""
        if self._closed:
            return
        self._closed = True
        self.ready.cancel()
        for lot in self.registry.pending_lots():
            lot.future.cancel()
            self._finish(lot, "cancelled")
        LOG.info("Correlation engine shut down")

    def _validate(self, items: Sequence[WorkItem | Mapping[str, Any]]) -> List[WorkItem]:
        if not items:
            raise MalformedItemError("No objects to send")
        objects: List[WorkItem] = []
        for idx, item in enumerate(items):
            if isinstance(item, WorkItem):
                objects.append(item)
                continue
            try:
                objects.append(WorkItem.model_validate(item))
            except ValidationError as exc:
                raise MalformedItemError(
                    f"Object {idx} must contain properties 'cnt' (0-65535), 'prob' (true/false) "
                    "and 'rid' (0-127); cannot send"
                ) from exc
        return objects

    def _check_keys(self, groups: List[List[WorkItem]]) -> None:
        seen = set()
        for group in groups:
            key = group[-1].key
            if key in seen or key in self.registry:
                raise DuplicateKeyError(f"Key {key} is already pending")
            seen.add(key)

    def _complete(self, lot: Lot) -> None:
        result = LotResult(records=list(lot.accumulated), info=lot.info)
        lot.future.set_result(result)
        self._finish(lot, "completed")
        if lot.callback is not None:
            try:
                lot.callback(result.records, result.info)
            except Exception:
                LOG.exception("Lot callback failed", extra={"lot": lot.lot_id})

    def _finish(self, lot: Lot, outcome: str) -> None:
        self.registry.retire(lot.lot_id)
        observe_finished(outcome, self.pending_count)
