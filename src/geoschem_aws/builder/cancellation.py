"""Cancellation and deadlines shared by every blocking call."""
from __future__ import annotations

import threading
import time
from typing import Optional

from geoschem_aws.builder.errors import OperationCancelled


class CancelToken:
    """
    Cooperative cancellation signal with an optional deadline.

    A token is cancelled either explicitly (``cancel()``, e.g. from a signal
    handler) or implicitly once its deadline passes. Child tokens created with
    ``child()`` observe the parent's cancellation and may have a tighter
    deadline of their own.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["CancelToken"] = None) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be a non-negative number")
        self._event = threading.Event()
        self._parent = parent
        self._reason = ""
        self.deadline: Optional[float] = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        return "deadline exceeded"

    def remaining(self) -> Optional[float]:
        """Seconds until the nearest deadline, or None when unbounded."""
        candidates = []
        if self.deadline is not None:
            candidates.append(self.deadline - time.monotonic())
        if self._parent is not None:
            parent_remaining = self._parent.remaining()
            if parent_remaining is not None:
                candidates.append(parent_remaining)
        if not candidates:
            return None
        return max(0.0, min(candidates))

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"operation cancelled: {self.reason}")

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first; raises OperationCancelled then."""
        self.raise_if_cancelled()
        end = time.monotonic() + seconds
        while True:
            left = end - time.monotonic()
            if left <= 0:
                break
            remaining = self.remaining()
            step = left if remaining is None else min(left, remaining)
            # Poll the parent chain at least once a second.
            if self._event.wait(min(step, 1.0)):
                break
            if self.cancelled:
                break
        self.raise_if_cancelled()

    def child(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken(timeout=timeout, parent=self)
