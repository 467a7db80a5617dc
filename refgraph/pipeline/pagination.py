"""Paged search fetching: fast first page, then bounded parallel batches reassembled in page order."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from refgraph.core.errors import NotFoundError, TransientNetworkError
from refgraph.core.logging_utils import log_event
from refgraph.core.models import Entry
from refgraph.integrations.inspire import InspireClient, build_entry_from_hit
from refgraph.pipeline.cancellation import CancellationToken, wait_all

PAGE_SIZE = 250
MAX_RESULTS = 10000
MAX_PAGES = 40
PARALLEL_BATCH_SIZE = 3


@dataclass(frozen=True)
class PageSnapshot:
    """Immutable cumulative view emitted after page 1 and after each batch."""

    entries: Tuple[Entry, ...]
    total_hits: int
    pages_fetched: int


@dataclass(frozen=True)
class PaginatedResult:
    """Final outcome of a paged fetch.

    ``complete`` is False when any later page failed transiently; such
    results must not be persisted.
    """

    entries: Tuple[Entry, ...]
    total_hits: int
    pages_fetched: int
    complete: bool
    failed_pages: Tuple[int, ...] = ()


@dataclass
class _PageOutcome:
    page: int
    hits: List[Dict[str, Any]]
    failed: bool = False


class PaginatedFetchPipeline:
    """Fetch every hit of a search up to a hard cap."""

    def __init__(
        self,
        client: InspireClient,
        *,
        page_size: int = PAGE_SIZE,
        max_results: int = MAX_RESULTS,
        max_pages: int = MAX_PAGES,
        batch_size: int = PARALLEL_BATCH_SIZE,
        entry_prefix: str = "search",
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.client = client
        self.page_size = max(1, int(page_size))
        self.max_results = max(1, int(max_results))
        self.max_pages = max(1, int(max_pages))
        self.batch_size = max(1, int(batch_size))
        self.entry_prefix = entry_prefix
        self._executor = executor
        self._owns_executor = executor is None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="refgraph-pages")
        return self._executor

    def remaining_pages(self, total_hits: int, fetched: int) -> int:
        """Pages still needed after ``fetched`` entries, bounded by the page limit."""
        target = min(int(total_hits), self.max_results)
        if fetched >= target:
            return 0
        needed = math.ceil((target - fetched) / self.page_size)
        return max(0, min(needed, self.max_pages - 1))

    def _fetch_page(
        self,
        query: str,
        page: int,
        sort: Optional[str],
        token: Optional[CancellationToken],
    ) -> _PageOutcome:
        try:
            result = self.client.search_page(query, page=page, size=self.page_size, sort=sort, token=token)
        except NotFoundError:
            return _PageOutcome(page=page, hits=[])
        except TransientNetworkError as exc:
            log_event("pagination_page_failed", {"query": query, "page": page, "error": str(exc)})
            return _PageOutcome(page=page, hits=[], failed=True)
        return _PageOutcome(page=page, hits=result.hits)

    def run(
        self,
        query: str,
        *,
        sort: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[PageSnapshot], None]] = None,
    ) -> PaginatedResult:
        """Fetch all pages of ``query``.

        Args:
            query (str): Search query.
            sort (Optional[str]): Remote sort order.
            token (Optional[CancellationToken]): Token checked before every mutation.
            on_progress (Optional[Callable[[PageSnapshot], None]]): Receives cumulative snapshots in increasing order.

        Returns:
            PaginatedResult: Entries in page order, capped at ``max_results``.

        Raises:
            NotFoundError: If page 1 answers 404.
            TransientNetworkError: If page 1 fails.
            AbortedError: If the token is cancelled.
        """
        if token is not None:
            token.raise_if_cancelled()
        first = self.client.search_page(query, page=1, size=self.page_size, sort=sort, token=token)
        if token is not None:
            token.raise_if_cancelled()

        cap = min(first.total, self.max_results)
        entries: List[Entry] = []
        for hit in first.hits[:cap]:
            entries.append(build_entry_from_hit(hit, len(entries), prefix=self.entry_prefix))
        pages_fetched = 1
        if on_progress is not None:
            on_progress(PageSnapshot(entries=tuple(entries), total_hits=first.total, pages_fetched=pages_fetched))

        remaining = self.remaining_pages(first.total, len(entries))
        pages = list(range(2, 2 + remaining))
        failed: List[int] = []
        for start in range(0, len(pages), self.batch_size):
            if len(entries) >= cap:
                break
            if token is not None:
                token.raise_if_cancelled()
            batch = pages[start : start + self.batch_size]
            futures = [self._pool().submit(self._fetch_page, query, page, sort, token) for page in batch]
            outcomes = wait_all(futures, token)
            if token is not None:
                token.raise_if_cancelled()
            for outcome in sorted(outcomes, key=lambda o: o.page):
                pages_fetched += 1
                if outcome.failed:
                    failed.append(outcome.page)
                for hit in outcome.hits:
                    if len(entries) >= cap:
                        break
                    entries.append(build_entry_from_hit(hit, len(entries), prefix=self.entry_prefix))
            if on_progress is not None:
                on_progress(PageSnapshot(entries=tuple(entries), total_hits=first.total, pages_fetched=pages_fetched))

        log_event(
            "pagination_complete",
            {
                "query": query,
                "sort": sort,
                "total_hits": first.total,
                "fetched": len(entries),
                "pages": pages_fetched,
                "failed_pages": failed,
            },
        )
        return PaginatedResult(
            entries=tuple(entries),
            total_hits=first.total,
            pages_fetched=pages_fetched,
            complete=not failed,
            failed_pages=tuple(failed),
        )

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
