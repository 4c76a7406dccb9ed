"""Exceptions raised by place_tracker."""

from __future__ import annotations


class PlaceTrackerError(Exception):
    """Base class for errors raised by this package."""


class InvalidSampleError(PlaceTrackerError, ValueError):
    """A raw sample in an ingestion batch is malformed.

    The whole batch is rejected; ``index`` points at the offending sample.
    """

    def __init__(self, index: int, reason: str) -> None:
        super().__init__(f"第 {index} 个样本无效：{reason}")
        self.index = index
        self.reason = reason


class PlaceNotFoundError(PlaceTrackerError, LookupError):
    """No place with the given id (or label) exists for the subject."""
