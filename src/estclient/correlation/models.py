"""Wire models and correlation keys."""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, List, NamedTuple, Optional, Set, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_CNT = 0xFFFF
MAX_RID = 0x7F


class CorrelationKey(NamedTuple):
    cnt: int
    prob: bool
    rid: int


class WorkItem(BaseModel):
    """One object sent to the estimator."""

    cnt: int = Field(..., ge=0, le=MAX_CNT)
    prob: bool
    rid: int = Field(..., ge=0, le=MAX_RID)
    vars: List[Union[int, float]] = Field(default_factory=list)
    reset: bool = False
    uid: Optional[int] = None
    train: Optional[float] = None

    @field_validator("vars", mode="before")
    @classmethod
    def _flatten_vars(cls, value: Any) -> Any:
        if isinstance(value, np.ndarray):
            return value.astype(float).reshape(-1).tolist()
        return value

    @property
    def key(self) -> CorrelationKey:
        return CorrelationKey(self.cnt, self.prob, self.rid)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ResultRecord(BaseModel):
    """One estimate returned by the estimator."""

    model_config = ConfigDict(extra="allow")

    cnt: int = Field(..., ge=0, le=MAX_CNT)
    prob: bool
    rid: int = Field(..., ge=0, le=MAX_RID)
    est: Optional[float] = None
    ests: Optional[List[float]] = None

    @property
    def key(self) -> CorrelationKey:
        return CorrelationKey(self.cnt, self.prob, self.rid)

    @property
    def is_training(self) -> bool:
        # Odd counts acknowledge training objects.
        return self.cnt % 2 == 1


@dataclass(frozen=True)
class LotResult:
    records: List[ResultRecord]
    info: Any = None


LotCallback = Callable[[List[ResultRecord], Any], None]


@dataclass
class Lot:
    """A logical submission awaiting its results."""

    lot_id: int
    expected_count: int
    info: Any = None
    callback: Optional[LotCallback] = None
    submitted_at: float = 0.0
    accumulated: List[ResultRecord] = field(default_factory=list)
    keys: Set[CorrelationKey] = field(default_factory=set)
    future: "Future[LotResult]" = field(default_factory=Future)

    @property
    def complete(self) -> bool:
        return len(self.accumulated) >= self.expected_count

    @property
    def done(self) -> bool:
        return self.future.done()


@dataclass(frozen=True)
class CompletionHandle:
    lot_id: int
    future: "Future[LotResult]"

    def result(self, timeout: Optional[float] = None) -> LotResult:
        return self.future.result(timeout=timeout)

    def done(self) -> bool:
        return self.future.done()
