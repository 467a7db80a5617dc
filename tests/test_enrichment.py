"""Tests for the background enrichment scheduler."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from refgraph.core.errors import PartialEnrichmentFailure, TransientNetworkError
from refgraph.core.models import Entry
from refgraph.pipeline.bounded_cache import BoundedCache
from refgraph.pipeline.cancellation import CancellationToken
from refgraph.services.enrichment import EnrichmentScheduler
from refgraph.services.library import InMemoryLibrary


def _metadata(recid: str, cites: int = 7) -> Dict[str, Any]:
    return {
        "control_number": int(recid),
        "titles": [{"title": f"Full title {recid}"}],
        "authors": [{"full_name": f"Author {recid}"}],
        "citation_count": cites,
        "earliest_date": "2015-03-01",
    }


class _FakeBatchClient:
    def __init__(self, fail_if_contains: Optional[str] = None) -> None:
        self.fail_if_contains = fail_if_contains
        self.batches: List[List[str]] = []
        self._lock = threading.Lock()

    def fetch_metadata_batch(self, recids, *, token=None) -> Dict[str, Dict[str, Any]]:
        recids = list(recids)
        with self._lock:
            self.batches.append(recids)
        if self.fail_if_contains in recids:
            raise TransientNetworkError("batch failed", status_code=500)
        return {recid: _metadata(recid) for recid in recids}


def _bare(recid: Optional[str], idx: int) -> Entry:
    return Entry(id=f"{idx}-{recid or idx}", recid=recid, title="", authors=[])


def _scheduler(client, cache=None, library=None, **kwargs) -> EnrichmentScheduler:
    return EnrichmentScheduler(client, cache or BoundedCache(500, name="metadata"), library, **kwargs)


def test_cached_metadata_is_applied_without_network() -> None:
    client = _FakeBatchClient()
    cache: BoundedCache[str, Dict[str, Any]] = BoundedCache(10)
    cache.set("1", _metadata("1", cites=99))
    scheduler = _scheduler(client, cache)
    entries = [_bare("1", 0), _bare("2", 1), _bare(None, 2)]
    updated: List[str] = []

    report = scheduler.enrich(entries, notify=lambda e: updated.append(e.id))
    scheduler.close()

    assert report.from_cache == 1
    assert report.requested == 1
    assert client.batches == [["2"]]
    assert entries[0].citation_count == 99
    assert entries[1].title == "Full title 2"
    assert entries[2].title == ""
    assert set(updated) == {"0-1", "1-2"}
    assert cache.peek("2") is not None


def test_complete_entries_are_not_requested() -> None:
    client = _FakeBatchClient()
    scheduler = _scheduler(client)
    entry = Entry(id="0-5", recid="5", title="Known", authors=["A"], citation_count=1)
    report = scheduler.enrich([entry])
    scheduler.close()
    assert report.requested == 0
    assert client.batches == []


def test_batches_run_independently_and_failures_are_recorded() -> None:
    client = _FakeBatchClient(fail_if_contains="30")
    scheduler = _scheduler(client, batch_size=25, parallelism=3)
    entries = [_bare(str(n), n) for n in range(1, 61)]

    report = scheduler.enrich(entries)
    scheduler.close()

    assert report.batches == 3
    assert sorted(len(batch) for batch in client.batches) == [10, 25, 25]
    assert len(report.failures) == 1
    assert isinstance(report.failures[0], PartialEnrichmentFailure)
    assert report.from_network == 35
    assert entries[0].title == "Full title 1"
    assert entries[29].title == ""
    assert entries[59].title == "Full title 60"
    assert report.cancelled is False


def test_batch_size_and_parallelism_are_clamped() -> None:
    scheduler = _scheduler(_FakeBatchClient(), batch_size=1000, parallelism=99)
    assert (scheduler.batch_size, scheduler.parallelism) == (200, 5)
    scheduler = _scheduler(_FakeBatchClient(), batch_size=1, parallelism=0)
    assert (scheduler.batch_size, scheduler.parallelism) == (25, 1)


def test_library_lookup_is_chunked_and_sets_relatedness() -> None:
    library = InMemoryLibrary({"1": "item-1", "3": "item-3"})
    library.relate("current", "item-3")
    scheduler = _scheduler(_FakeBatchClient(), library=library, library_chunk_size=2)
    entries = [
        Entry(id=f"{n}", recid=str(n), title="T", authors=["A"], citation_count=1) for n in range(1, 6)
    ]
    notified: List[str] = []

    report = scheduler.enrich(entries, current_item_id="current", notify=lambda e: notified.append(e.recid))
    scheduler.close()

    assert library.batch_calls == 3
    assert report.local_matches == 2
    assert entries[0].local_item_id == "item-1"
    assert entries[0].is_related is False
    assert entries[2].is_related is True
    assert sorted(notified) == ["1", "3"]


def test_refresh_local_status_clears_removed_items() -> None:
    library = InMemoryLibrary()
    scheduler = _scheduler(_FakeBatchClient(), library=library)
    entry = Entry(id="0", recid="8", local_item_id="gone", is_related=True)
    assert scheduler.refresh_local_status([entry]) == 0
    assert entry.local_item_id is None
    assert entry.is_related is False


def test_cancelled_pass_reports_cancelled_and_skips_network() -> None:
    client = _FakeBatchClient()
    scheduler = _scheduler(client, library=InMemoryLibrary())
    token = CancellationToken("enrich")
    token.cancel()

    report = scheduler.enrich([_bare("1", 0)], token=token)
    scheduler.close()

    assert report.cancelled is True
    assert client.batches == []
