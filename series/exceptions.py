# series/exceptions.py
from __future__ import annotations


class SeriesError(Exception):
    """
    Base class for every error raised while allocating a series number.

    Any SeriesError aborts the save of the instance that requested the
    allocation. The instance keeps its autofill flag so the caller can retry.
    """


class InvalidTemplate(SeriesError, ValueError):
    """The suffix template cannot be resolved into a series suffix."""

    def __init__(self, template, reason: str = "") -> None:
        self.template = template
        self.reason = reason
        message = f"Invalid series suffix template {template!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class QueryFailure(SeriesError):
    """The entity store failed while looking up the current series maximum."""

    def __init__(self, key, message: str = "") -> None:
        self.key = key
        super().__init__(message or f"Could not read the current maximum of series {key}")


class SeriesLocked(SeriesError):
    """The per-series lock could not be acquired within the retry budget."""

    def __init__(self, key, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Series {key} is locked by another allocation "
            f"(gave up after {attempts} attempt(s))"
        )
