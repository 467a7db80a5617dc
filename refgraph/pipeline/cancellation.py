"""Cancellation tokens and per-request-class supervision for background fetches."""

from __future__ import annotations

import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Dict, Iterable, List, Optional

from refgraph.core.errors import AbortedError

POLL_INTERVAL_SECONDS = 0.05


class CancellationToken:
    """One-shot cancellation flag shared between a request and its workers."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise AbortedError when the token has been cancelled."""
        if self._event.is_set():
            raise AbortedError(f"request cancelled: {self.label}" if self.label else "request cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))


class RequestSupervisor:
    """Track the active token for each request class.

    Starting a new request of a class cancels the previous one, so only the
    most recent view request or enrichment pass may publish results.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, CancellationToken] = {}

    def begin(self, request_class: str) -> CancellationToken:
        token = CancellationToken(request_class)
        with self._lock:
            previous = self._active.get(request_class)
            self._active[request_class] = token
        if previous is not None:
            previous.cancel()
        return token

    def cancel(self, request_class: str) -> None:
        with self._lock:
            token = self._active.pop(request_class, None)
        if token is not None:
            token.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            tokens = list(self._active.values())
            self._active.clear()
        for token in tokens:
            token.cancel()

    def is_current(self, request_class: str, token: CancellationToken) -> bool:
        with self._lock:
            return self._active.get(request_class) is token and not token.cancelled

    def finish(self, request_class: str, token: CancellationToken) -> None:
        """Forget ``token`` if it is still the active one for its class."""
        with self._lock:
            if self._active.get(request_class) is token:
                del self._active[request_class]


def wait_for(future: Future, token: Optional[CancellationToken] = None) -> Any:
    """Block on ``future`` while watching ``token``.

    Raises AbortedError as soon as the token is cancelled. The worker keeps
    running and its result is discarded.
    """
    if token is None:
        return future.result()
    while True:
        token.raise_if_cancelled()
        try:
            return future.result(timeout=POLL_INTERVAL_SECONDS)
        except FutureTimeout:
            continue


def wait_all(futures: Iterable[Future], token: Optional[CancellationToken] = None) -> List[Any]:
    """Wait for every future in order and return their results."""
    return [wait_for(future, token) for future in futures]
