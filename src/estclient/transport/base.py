"""Transport contract used by the correlation engine."""

from __future__ import annotations

from typing import Any, List, Protocol, Tuple


class Transport(Protocol):
    """Outbound half of a bidirectional message channel to the estimator."""

    def send(self, kind: str, payload: Any) -> None: ...


class RecordingTransport:
    """In-memory transport that keeps every frame handed to it."""

    def __init__(self) -> None:
        self.frames: List[Tuple[str, Any]] = []

    def send(self, kind: str, payload: Any) -> None:
        self.frames.append((kind, payload))

    @property
    def payloads(self) -> List[Any]:
        return [payload for _, payload in self.frames]

    def clear(self) -> None:
        self.frames.clear()
