"""Process-wide gate for outbound API requests: FIFO queue, concurrency cap, sliding window, and 429 backoff."""

from __future__ import annotations

import itertools
import random
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

import requests

from refgraph.core.errors import TransientNetworkError
from refgraph.core.logging_utils import log_event
from refgraph.pipeline.cancellation import POLL_INTERVAL_SECONDS, CancellationToken, wait_for

BACKOFF_BASE_DELAY_SECONDS = 1.0
BACKOFF_MAX_DELAY_SECONDS = 30.0
USER_AGENT = "refgraph/0.1"

StatusCallback = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class FetchResponse:
    """Outcome of a completed request.

    Attributes:
        url: Requested URL.
        status_code: Final HTTP status.
        payload: Decoded JSON body for 2xx responses, otherwise ``None``.
        not_found: True when the remote answered 404.
    """

    url: str
    status_code: int
    payload: Any = None
    not_found: bool = False


@dataclass
class _RawResult:
    status_code: int
    payload: Any = None
    retry_after: Optional[str] = None
    error: Optional[str] = None


def _backoff_delay(retry_count: int) -> float:
    """Internal helper for backoff delay."""
    delay = BACKOFF_BASE_DELAY_SECONDS * (2**retry_count)
    jitter = delay * 0.25 * random.uniform(-1.0, 1.0)
    return min(delay + jitter, BACKOFF_MAX_DELAY_SECONDS)


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Internal helper for retry after seconds."""
    if not value:
        return None
    try:
        seconds = int(str(value).strip())
    except ValueError:
        return None
    return float(seconds) if seconds > 0 else None


class RateLimitedFetcher:
    """Single shared gate for every outbound HTTP call.

    Requests wait in a FIFO queue until both the concurrency cap and the
    sliding-window ceiling allow them to start. The HTTP call itself runs on
    an executor owned by the fetcher so a waiting caller can abandon it when
    its cancellation token fires.
    """

    def __init__(
        self,
        *,
        max_requests: int = 15,
        window_seconds: float = 5.0,
        max_concurrent: int = 6,
        max_retries: int = 3,
        timeout: float = 30.0,
        session: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(0.0, float(window_seconds))
        self.max_concurrent = max(1, int(max_concurrent))
        self.max_retries = max(0, int(max_retries))
        self.timeout = float(timeout)
        self._session = session if session is not None else requests.Session()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[int] = deque()
        self._tickets = itertools.count(1)
        self._active = 0
        self._starts: Deque[float] = deque()
        self._retrying = 0
        self._window_blocked = False
        self._subscribers: Dict[int, StatusCallback] = {}
        self._subscriber_ids = itertools.count(1)
        self._last_status: Optional[Dict[str, Any]] = None
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="refgraph-http")

    # status feed

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return self._status_locked()

    def _status_locked(self) -> Dict[str, Any]:
        return {
            "is_throttling": bool(self._retrying > 0 or self._window_blocked),
            "queued_count": len(self._queue),
        }

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status observer; returns a function that unsubscribes it."""
        with self._cond:
            sub_id = next(self._subscriber_ids)
            self._subscribers[sub_id] = callback
        return lambda: self._remove_subscriber(sub_id)

    def unsubscribe(self, callback: StatusCallback) -> None:
        with self._cond:
            for sub_id, existing in list(self._subscribers.items()):
                if existing is callback:
                    del self._subscribers[sub_id]

    def _remove_subscriber(self, sub_id: int) -> None:
        with self._cond:
            self._subscribers.pop(sub_id, None)

    def _notify(self) -> None:
        with self._cond:
            status = self._status_locked()
            if status == self._last_status:
                return
            self._last_status = status
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(dict(status))
            except Exception as exc:
                log_event("rate_limit_callback_error", {"error": str(exc)})

    # slot management

    def _prune_window(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_seconds:
            self._starts.popleft()

    def _acquire(self, token: Optional[CancellationToken]) -> None:
        with self._cond:
            ticket = next(self._tickets)
            self._queue.append(ticket)
        self._notify()
        try:
            while not self._try_start(ticket, token):
                self._notify()
        finally:
            self._notify()
        if token is not None:
            token.raise_if_cancelled()

    def _try_start(self, ticket: int, token: Optional[CancellationToken]) -> bool:
        """Wait briefly for a slot; True once the ticket started or left the queue."""
        with self._cond:
            if token is not None and token.cancelled:
                self._queue.remove(ticket)
                self._cond.notify_all()
                return True
            now = self._clock()
            self._prune_window(now)
            window_full = len(self._starts) >= self.max_requests
            self._window_blocked = window_full
            if self._queue[0] == ticket and self._active < self.max_concurrent and not window_full:
                self._queue.popleft()
                self._active += 1
                self._starts.append(now)
                self._cond.notify_all()
                return True
            wait = POLL_INTERVAL_SECONDS
            if window_full and self._starts:
                wait = max(0.0, min(wait, self._starts[0] + self.window_seconds - now))
            self._cond.wait(timeout=wait or POLL_INTERVAL_SECONDS)
            return False

    def _release(self) -> None:
        with self._cond:
            self._active = max(0, self._active - 1)
            self._cond.notify_all()
        self._notify()

    # request execution

    def _perform(self, url: str, params: Optional[Dict[str, Any]]) -> _RawResult:
        """Run one HTTP GET on an executor thread and release the slot afterwards."""
        try:
            resp = self._session.get(
                url,
                params=params,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=self.timeout,
            )
            try:
                status = int(resp.status_code)
                if 200 <= status < 300:
                    try:
                        return _RawResult(status_code=status, payload=resp.json())
                    except ValueError as exc:
                        return _RawResult(status_code=status, error=f"invalid json: {exc}")
                return _RawResult(status_code=status, retry_after=resp.headers.get("Retry-After"))
            finally:
                close = getattr(resp, "close", None)
                if callable(close):
                    close()
        except requests.RequestException as exc:
            return _RawResult(status_code=0, error=str(exc))
        finally:
            self._release()

    def fetch(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        token: Optional[CancellationToken] = None,
    ) -> FetchResponse:
        """Fetch ``url`` through the shared gate.

        Args:
            url (str): Endpoint URL.
            params (Optional[Dict[str, Any]]): Query params.
            token (Optional[CancellationToken]): Cancellation token of the owning request.

        Returns:
            FetchResponse: Decoded 2xx payload, or a ``not_found`` response on 404.

        Raises:
            AbortedError: If the token is cancelled while queued, in flight, or backing off.
            TransientNetworkError: On any other failure, including exhausted 429 retries.
        """
        retry_count = 0
        while True:
            self._acquire(token)
            try:
                future = self._executor.submit(self._perform, url, params)
            except RuntimeError:
                self._release()
                raise TransientNetworkError("fetcher is closed")
            raw = wait_for(future, token)
            if raw.error:
                raise TransientNetworkError(f"request failed: {raw.error}", status_code=raw.status_code or None)
            if 200 <= raw.status_code < 300:
                return FetchResponse(url=url, status_code=raw.status_code, payload=raw.payload)
            if raw.status_code == 404:
                return FetchResponse(url=url, status_code=404, not_found=True)
            if raw.status_code == 429 and retry_count < self.max_retries:
                delay = _retry_after_seconds(raw.retry_after) or _backoff_delay(retry_count)
                log_event(
                    "rate_limit_retry",
                    {"url": url, "attempt": retry_count + 1, "max_retries": self.max_retries, "delay_seconds": round(delay, 3)},
                )
                self._begin_backoff()
                try:
                    if token is not None:
                        if token.wait(delay):
                            token.raise_if_cancelled()
                    else:
                        time.sleep(delay)
                finally:
                    self._end_backoff()
                retry_count += 1
                continue
            if raw.status_code == 429:
                log_event("rate_limit_exhausted", {"url": url, "retries": retry_count})
            raise TransientNetworkError(f"HTTP {raw.status_code} for {url}", status_code=raw.status_code)

    def _begin_backoff(self) -> None:
        with self._cond:
            self._retrying += 1
        self._notify()

    def _end_backoff(self) -> None:
        with self._cond:
            self._retrying = max(0, self._retrying - 1)
        self._notify()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        close = getattr(self._session, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "RateLimitedFetcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
