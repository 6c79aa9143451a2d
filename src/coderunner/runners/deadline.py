"""Cancellable deadlines shared between a caller and the engine."""

from __future__ import annotations

import threading
import time
from datetime import timedelta


class Deadline:
    """An absolute point in time on the monotonic clock that can also be cancelled early.

    Once cancelled, :meth:`remaining` reports zero and the deadline counts as
    expired. Cancellation is thread-safe and may come from any thread.

    Example:
        deadline = Deadline.after(10)
        result = engine.execute(code, "python", deadline)
    """

    def __init__(self, expires_at: float) -> None:
        self.expires_at = expires_at
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        if seconds < 0:
            raise ValueError("deadline seconds must not be negative")
        return cls(time.monotonic() + seconds)

    @classmethod
    def coerce(cls, value: "Deadline | float | int | timedelta") -> "Deadline":
        """Accept a ``Deadline``, a number of seconds, or a ``timedelta``."""
        if isinstance(value, Deadline):
            return value
        if isinstance(value, timedelta):
            return cls.after(value.total_seconds())
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls.after(float(value))
        raise TypeError(f"cannot build a deadline from {type(value).__name__}")

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float:
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s, cancelled={self.cancelled})"
