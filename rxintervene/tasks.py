"""
Detached tasks for best-effort side effects.

Patient-flag refreshes and notifications run after the primary operation
has already succeeded.  They must never block it or change its result,
so they are spawned through a ``DetachedTaskRunner``: any exception is
caught, logged, and recorded in ``failures`` (the side channel), and the
caller sees nothing.

With no executor the runner executes tasks inline, which keeps tests
deterministic.  Passing a ``concurrent.futures`` executor makes them truly
fire-and-forget; ``wait()`` drains outstanding work.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, wait as wait_futures
from datetime import datetime
from typing import Any, Callable, Optional

from rxintervene.models import utcnow

logger = logging.getLogger(__name__)


class TaskFailure:
    """Record of a detached task that raised."""

    def __init__(self, name: str, error: BaseException, failed_at: datetime) -> None:
        self.name = name
        self.error = error
        self.failed_at = failed_at

    def __repr__(self) -> str:
        return f"TaskFailure(name='{self.name}', error={self.error!r})"


class DetachedTaskRunner:
    """Runs side effects whose failures are logged and never propagated."""

    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._executor = executor
        self._pending: list[Future] = []
        self._failures: list[TaskFailure] = []
        self._lock = threading.Lock()

    def spawn(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Run ``fn(*args, **kwargs)`` detached from the caller."""
        if self._executor is None:
            self._run(name, fn, args, kwargs)
            return
        future = self._executor.submit(self._run, name, fn, args, kwargs)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def _run(self, name: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as exc:
            logger.exception("Detached task '%s' failed", name)
            with self._lock:
                self._failures.append(TaskFailure(name, exc, utcnow()))

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until all spawned tasks have finished (executor mode only)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait_futures(pending, timeout=timeout)

    @property
    def failures(self) -> list[TaskFailure]:
        with self._lock:
            return list(self._failures)
