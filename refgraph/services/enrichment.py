"""Background backfill of missing entry metadata and local-library status."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from refgraph.core.config import ENRICH_BATCH_RANGE, ENRICH_PARALLEL_RANGE
from refgraph.core.errors import AbortedError, PartialEnrichmentFailure, TransientNetworkError
from refgraph.core.logging_utils import log_event
from refgraph.core.models import Entry
from refgraph.integrations.inspire import InspireClient, apply_metadata, is_metadata_complete, needs_enrichment
from refgraph.pipeline.bounded_cache import BoundedCache
from refgraph.pipeline.cancellation import CancellationToken, wait_for
from refgraph.services.library import LocalLibrary

LIBRARY_CHUNK_SIZE = 500

EntryCallback = Callable[[Entry], None]


@dataclass
class EnrichmentReport:
    """Summary of one enrichment pass; partial results are a normal outcome."""

    requested: int = 0
    from_cache: int = 0
    from_network: int = 0
    local_matches: int = 0
    batches: int = 0
    failures: List[PartialEnrichmentFailure] = field(default_factory=list)
    cancelled: bool = False


def _chunks(items: Sequence[str], size: int) -> List[List[str]]:
    """Internal helper for chunks."""
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class EnrichmentScheduler:
    """Fill gaps in already-returned entries without blocking their display.

    Network batches run on a small worker pool; every write onto an entry
    happens on the calling thread after a token check.
    """

    def __init__(
        self,
        client: InspireClient,
        metadata_cache: BoundedCache[str, Dict[str, Any]],
        library: Optional[LocalLibrary] = None,
        *,
        batch_size: int = 100,
        parallelism: int = 4,
        library_chunk_size: int = LIBRARY_CHUNK_SIZE,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.client = client
        self.metadata_cache = metadata_cache
        self.library = library
        self.batch_size = max(ENRICH_BATCH_RANGE[0], min(ENRICH_BATCH_RANGE[1], int(batch_size)))
        self.parallelism = max(ENRICH_PARALLEL_RANGE[0], min(ENRICH_PARALLEL_RANGE[1], int(parallelism)))
        self.library_chunk_size = max(1, int(library_chunk_size))
        self._executor = executor
        self._owns_executor = executor is None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="refgraph-enrich")
        return self._executor

    def refresh_local_status(
        self,
        entries: Sequence[Entry],
        *,
        token: Optional[CancellationToken] = None,
        current_item_id: Any = None,
        notify: Optional[EntryCallback] = None,
    ) -> int:
        """Look up local-library ids in chunks and update entries; returns the match count."""
        if self.library is None:
            return 0
        recids = list(dict.fromkeys(e.recid for e in entries if e.recid))
        found: Dict[str, Any] = {}
        for chunk in _chunks(recids, self.library_chunk_size):
            if token is not None:
                token.raise_if_cancelled()
            found.update(self.library.batch_find_local_items(chunk))
        if token is not None:
            token.raise_if_cancelled()
        for entry in entries:
            if not entry.recid:
                continue
            local_id = found.get(entry.recid)
            related = bool(local_id is not None and self.library.is_related(current_item_id, local_id))
            if entry.local_item_id != local_id or entry.is_related != related:
                entry.local_item_id = local_id
                entry.is_related = related
                if notify is not None:
                    notify(entry)
        return sum(1 for entry in entries if entry.local_item_id is not None)

    def _fetch_batch(self, recids: List[str], token: Optional[CancellationToken]) -> Dict[str, Dict[str, Any]]:
        return self.client.fetch_metadata_batch(recids, token=token)

    def enrich(
        self,
        entries: Sequence[Entry],
        *,
        token: Optional[CancellationToken] = None,
        notify: Optional[EntryCallback] = None,
        current_item_id: Any = None,
    ) -> EnrichmentReport:
        """Backfill missing metadata and local status onto ``entries`` in place.

        Args:
            entries (Sequence[Entry]): Entries already handed to the caller.
            token (Optional[CancellationToken]): Cancelling stops the pass; applied updates stay.
            notify (Optional[EntryCallback]): Called once per updated entry.
            current_item_id (Any): Host item the list belongs to, for relatedness.

        Returns:
            EnrichmentReport: Counts and per-batch failures of the pass.
        """
        report = EnrichmentReport()
        try:
            self._enrich(entries, report, token, notify, current_item_id)
        except AbortedError:
            report.cancelled = True
        log_event(
            "enrichment_complete",
            {
                "entries": len(entries),
                "requested": report.requested,
                "from_cache": report.from_cache,
                "from_network": report.from_network,
                "local_matches": report.local_matches,
                "batches": report.batches,
                "failed_batches": len(report.failures),
                "cancelled": report.cancelled,
            },
        )
        return report

    def _enrich(
        self,
        entries: Sequence[Entry],
        report: EnrichmentReport,
        token: Optional[CancellationToken],
        notify: Optional[EntryCallback],
        current_item_id: Any,
    ) -> None:
        by_recid: Dict[str, List[Entry]] = {}
        for entry in entries:
            if not needs_enrichment(entry):
                continue
            cached = self.metadata_cache.get(entry.recid)
            if cached is not None and is_metadata_complete(cached):
                if token is not None:
                    token.raise_if_cancelled()
                apply_metadata(entry, cached)
                report.from_cache += 1
                if notify is not None:
                    notify(entry)
                continue
            by_recid.setdefault(str(entry.recid), []).append(entry)

        report.local_matches = self.refresh_local_status(
            entries, token=token, current_item_id=current_item_id, notify=notify
        )

        recids = list(by_recid)
        report.requested = len(recids)
        if not recids:
            return
        batches = _chunks(recids, self.batch_size)
        report.batches = len(batches)
        futures = [self._pool().submit(self._fetch_batch, batch, token) for batch in batches]
        for batch, future in zip(batches, futures):
            try:
                found = wait_for(future, token)
            except TransientNetworkError as exc:
                failure = PartialEnrichmentFailure(f"batch of {len(batch)} failed: {exc}")
                report.failures.append(failure)
                log_event("enrichment_batch_failed", {"size": len(batch), "first": batch[:5], "error": str(exc)})
                continue
            if token is not None:
                token.raise_if_cancelled()
            for recid, metadata in found.items():
                if is_metadata_complete(metadata):
                    self.metadata_cache.set(recid, metadata)
                for entry in by_recid.get(recid, []):
                    if apply_metadata(entry, metadata):
                        report.from_network += 1
                        if notify is not None:
                            notify(entry)

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
