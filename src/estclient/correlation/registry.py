"""In-memory registry of lots awaiting estimator replies."""

from __future__ import annotations

import itertools
import time
from typing import Any, Callable, Dict, List, Optional

from estclient.correlation.models import CorrelationKey, Lot, LotCallback
from estclient.errors import DuplicateKeyError, UnknownKeyError
from estclient.monitoring.metrics import DUPLICATE_KEYS
from estclient.utils.logging import get_logger

LOG = get_logger(__name__)


class LotRegistry:
    """Maps the key of each outstanding physical message to the lot it belongs to.

    A key maps to at most one lot. Reusing a key that is still pending is a
    protocol violation; by default the newer registration wins and the earlier
    lot can no longer complete through that key. ``strict_keys`` turns the
    violation into a ``DuplicateKeyError``.
    """

    def __init__(self, strict_keys: bool = False, clock: Callable[[], float] = time.monotonic) -> None:
        self.strict_keys = strict_keys
        self._clock = clock
        self._lot_ids = itertools.count()
        self._pending: Dict[CorrelationKey, Lot] = {}
        self._lots: Dict[int, Lot] = {}

    def new_lot(self, expected_count: int, info: Any = None, callback: Optional[LotCallback] = None) -> Lot:
        lot = Lot(
            lot_id=next(self._lot_ids),
            expected_count=expected_count,
            info=info,
            callback=callback,
            submitted_at=self._clock(),
        )
        self._lots[lot.lot_id] = lot
        return lot

    def register(self, key: CorrelationKey, lot: Lot) -> None:
        previous = self._pending.get(key)
        if previous is not None and not previous.done:
            if self.strict_keys:
                raise DuplicateKeyError(f"Key {key} is still pending for lot {previous.lot_id}")
            DUPLICATE_KEYS.inc()
            LOG.error(
                "Sending an object that conflicts with a pending object",
                extra={"key": list(key), "pending_lot": previous.lot_id, "lot": lot.lot_id},
            )
            previous.keys.discard(key)
        self._pending[key] = lot
        lot.keys.add(key)

    def lookup(self, key: CorrelationKey) -> Lot:
        try:
            return self._pending[key]
        except KeyError:
            raise UnknownKeyError(key) from None

    def remove(self, key: CorrelationKey) -> None:
        lot = self._pending.pop(key, None)
        if lot is not None:
            lot.keys.discard(key)

    def retire(self, lot_id: int) -> Optional[Lot]:
        lot = self._lots.pop(lot_id, None)
        if lot is None:
            return None
        for key in list(lot.keys):
            if self._pending.get(key) is lot:
                del self._pending[key]
        lot.keys.clear()
        return lot

    def get_lot(self, lot_id: int) -> Optional[Lot]:
        return self._lots.get(lot_id)

    def pending_lots(self) -> List[Lot]:
        return list(self._lots.values())

    def stale_lots(self, timeout: float, now: Optional[float] = None) -> List[Lot]:
        now = self._clock() if now is None else now
        return [lot for lot in self._lots.values() if now - lot.submitted_at >= timeout]

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)
