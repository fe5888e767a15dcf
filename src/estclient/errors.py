"""Error taxonomy for the estimator client."""

from __future__ import annotations


class EstimatorClientError(Exception):
    """Base class for estimator client errors."""


class MalformedItemError(EstimatorClientError):
    """A submitted work item lacks a valid ``(cnt, prob, rid)`` triple."""


class DuplicateKeyError(EstimatorClientError):
    """A correlation key is reused while an earlier submission is still pending."""


class UnknownKeyError(EstimatorClientError, KeyError):
    """An inbound reply matches no pending submission."""


class MalformedEstimateError(EstimatorClientError):
    """A predictor completion does not hold exactly one usable estimate."""


class DomainError(EstimatorClientError, ValueError):
    """A value outside the predictor's symbol domain."""


class LotTimeoutError(EstimatorClientError, TimeoutError):
    """A lot was still pending when its timeout elapsed."""


class EngineClosedError(EstimatorClientError):
    """The correlation engine has been shut down."""
