"""Coalescing task scheduler for debounced saves.

``schedule(key, fn, delay_ms)`` (re)starts a single timer per *key*; when the
timer fires, the **latest** ``fn`` runs once and every caller of the burst
gets that one result through its :class:`~concurrent.futures.Future`.  The
callable is expected to read current state itself, so the write reflects the
state at fire time, not at request time.

Writes for the same key never overlap: a timer that fires while the previous
write is still running waits for it.  :meth:`SaveDebouncer.flush` returns only
once the key has no write running, and :meth:`SaveDebouncer.hold` keeps writes
for a key out while a block of code runs.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    token: object
    timer: threading.Timer
    fn: Callable[[], Any]
    futures: list[Future] = field(default_factory=list)


class SaveDebouncer:
    """One pending timer and at most one running write per scope key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: dict[str, _Pending] = {}
        self._running: dict[str, int] = {}
        # Re-entrant so a write may call back into code that holds the key.
        self._write_locks: dict[str, threading.RLock] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def schedule(self, key: str, fn: Callable[[], Any], delay_ms: int) -> Future:
        """Run *fn* once *delay_ms* after the last request for *key*."""
        future: Future = Future()
        token = object()
        timer = threading.Timer(delay_ms / 1000.0, self._fire, args=(key, token))
        timer.daemon = True

        with self._lock:
            previous = self._pending.get(key)
            futures = [future]
            if previous is not None:
                previous.timer.cancel()
                futures = [*previous.futures, future]
            self._pending[key] = _Pending(token=token, timer=timer, fn=fn, futures=futures)
            self._write_locks.setdefault(key, threading.RLock())
        timer.start()

        logger.debug("Save scheduled for %r in %d ms (%d coalesced)", key, delay_ms, len(futures))
        return future

    def cancel(self, key: str) -> bool:
        """Drop the pending write for *key*.  Returns ``True`` if one existed."""
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is None:
            return False
        pending.timer.cancel()
        for fut in pending.futures:
            fut.cancel()
        logger.debug("Pending save for %r cancelled", key)
        return True

    def flush(self, key: Optional[str] = None) -> None:
        """Run pending writes now (all keys when *key* is ``None``).

        Returns once no write for the key(s) is running, including writes
        started by a timer before the call.
        """
        with self._lock:
            targets = [
                (k, p.token) for k, p in self._pending.items() if key is None or k == key
            ]
        for k, token in targets:
            self._fire(k, token)
        self.wait_idle(key)

    def wait_idle(self, key: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """Block until no write for *key* (any key when ``None``) is running."""
        with self._idle:
            return self._idle.wait_for(
                lambda: all(n == 0 for k, n in self._running.items() if key is None or k == key),
                timeout,
            )

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Keep writes for *key* out while the block runs.

        Waits for a running write to finish first; timers that fire meanwhile
        wait until the block exits.
        """
        with self._lock:
            write_lock = self._write_locks.setdefault(key, threading.RLock())
        with write_lock:
            yield

    def is_saving(self, key: str) -> bool:
        with self._lock:
            return self._running.get(key, 0) > 0

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def shutdown(self) -> None:
        """Flush every pending write and wait for running ones."""
        self.flush()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fire(self, key: str, token: object) -> None:
        with self._lock:
            pending = self._pending.get(key)
            if pending is None or pending.token is not token:
                return
            del self._pending[key]
            self._running[key] = self._running.get(key, 0) + 1
            write_lock = self._write_locks[key]
        pending.timer.cancel()
        futures = [f for f in pending.futures if f.set_running_or_notify_cancel()]

        try:
            with write_lock:
                result = pending.fn()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error during debounced save for %r: %s", key, exc)
            for fut in futures:
                fut.set_exception(exc)
        else:
            for fut in futures:
                fut.set_result(result)
        finally:
            with self._idle:
                self._running[key] -= 1
                self._idle.notify_all()
