"""
EvaluationContext - deadline + cancellation signal accepted by every evaluator call.

Evaluators call check() at each checkpoint; CanceledError is turned into
Deny/ErrCanceled by the evaluator and never reaches the caller.
"""

import threading
import time
from typing import Optional

from nsguard.services.shared.errors import CanceledError


class EvaluationContext:
    def __init__(self, deadline: Optional[float] = None):
        """deadline is an absolute time.monotonic() value, or None for no deadline."""
        self.deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def with_timeout(cls, seconds: float) -> "EvaluationContext":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self._cancelled.is_set():
            raise CanceledError("evaluation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CanceledError("evaluation deadline exceeded")
