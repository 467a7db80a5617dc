"""Reference-graph service: tiered cache lookup, progressive fetch, enrichment, and related ranking.

Result sets are looked up in the in-memory LRU tier first, then the
persistent cache, then the network. Every view activation carries a
cancellation token; a superseded activation never mutates shared state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from refgraph.core.errors import AbortedError, NotFoundError, RefGraphError, TransientNetworkError
from refgraph.core.logging_utils import log_event
from refgraph.core.models import Entry, RankedCandidate
from refgraph.core.settings import Settings
from refgraph.integrations.inspire import InspireClient, build_reference_entry
from refgraph.pipeline.bounded_cache import BoundedCache
from refgraph.pipeline.cancellation import CancellationToken, RequestSupervisor
from refgraph.pipeline.local_cache import PersistentCache
from refgraph.pipeline.pagination import PageSnapshot, PaginatedFetchPipeline
from refgraph.services.enrichment import EnrichmentReport, EnrichmentScheduler, EntryCallback
from refgraph.services.entry_filters import SORT_OPTIONS, sort_entries
from refgraph.services.library import LocalLibrary
from refgraph.services.rate_limit import RateLimitedFetcher
from refgraph.services.related_papers import RelatedParams, RelatedPapersRanker, related_cache_digest

MODES = ("references", "citedBy", "authorPapers", "search", "related")
CLIENT_SORT_MODES = frozenset({"references", "related"})
DEFAULT_REMOTE_SORT = "mostrecent"
REMOTE_SORT_ALIASES = {
    "default": "mostrecent",
    "yearDesc": "mostrecent",
    "citationDesc": "mostcited",
    "mostrecent": "mostrecent",
    "mostcited": "mostcited",
}
LIST_CACHE_SIZE = 50
METADATA_CACHE_SIZE = 500
REFERENCE_SNAPSHOT_SIZE = 100
VIEW_REQUEST = "view"
ENRICH_REQUEST = "enrich"

ProgressCallback = Callable[[Any], None]


@dataclass
class ResultSet:
    """A cached result list; entries are shared with callers and updated in place."""

    mode: str
    identifier: str
    sort: Optional[str]
    entries: List[Entry]
    total: int
    complete: bool = True
    ranked: List[RankedCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class LoadOutcome:
    """Explicit result of a view activation.

    ``state`` is one of ``ready``, ``not_found``, ``error``, or ``superseded``.
    A superseded outcome carries no entries and must not be rendered.
    """

    state: str
    mode: str
    identifier: str
    sort: Optional[str] = None
    entries: Tuple[Entry, ...] = ()
    ranked: Tuple[RankedCandidate, ...] = ()
    total: int = 0
    source: Optional[str] = None
    complete: bool = True
    error: Optional[str] = None
    enrichment: Optional[EnrichmentReport] = None


def _list_query(mode: str, identifier: str) -> str:
    """Internal helper for list query."""
    if mode == "citedBy":
        return f"refersto:recid:{identifier}"
    if mode == "authorPapers":
        return f"a {identifier}"
    return identifier


class ReferenceGraphService:
    """Facade tying caches, fetch pipeline, enrichment, and ranking together."""

    def __init__(
        self,
        client: InspireClient,
        *,
        persistent_cache: Optional[PersistentCache] = None,
        library: Optional[LocalLibrary] = None,
        related_params: Optional[RelatedParams] = None,
        enrich_batch_size: int = 100,
        enrich_parallelism: int = 4,
        pipeline: Optional[PaginatedFetchPipeline] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
    ) -> None:
        self.client = client
        self.fetcher = fetcher
        self.persistent_cache = persistent_cache
        self.library = library
        self.related_params = related_params or RelatedParams()
        self.list_cache: BoundedCache[Tuple[str, str, Optional[str]], ResultSet] = BoundedCache(LIST_CACHE_SIZE, name="lists")
        self.metadata_cache: BoundedCache[str, Dict[str, Any]] = BoundedCache(METADATA_CACHE_SIZE, name="metadata")
        self.abstract_cache: BoundedCache[str, str] = BoundedCache(METADATA_CACHE_SIZE, name="abstracts")
        self.supervisor = RequestSupervisor()
        self.pipeline = pipeline or PaginatedFetchPipeline(client)
        self.ranker = RelatedPapersRanker(client, self.related_params)
        self.scheduler = EnrichmentScheduler(
            client,
            self.metadata_cache,
            library,
            batch_size=enrich_batch_size,
            parallelism=enrich_parallelism,
        )

    # keys

    def _memory_key(self, mode: str, identifier: str, sort: Optional[str]) -> Tuple[str, str, Optional[str]]:
        if mode == "related":
            return (mode, f"{identifier}:{related_cache_digest(identifier, self.related_params)}", None)
        if mode in CLIENT_SORT_MODES:
            return (mode, identifier, None)
        return (mode, identifier, sort)

    def _disk_query(self, mode: str, identifier: str) -> str:
        if mode == "related":
            return f"{identifier}:{related_cache_digest(identifier, self.related_params)[:16]}"
        return identifier

    def _normalize_sort(self, mode: str, sort: Optional[str]) -> str:
        """Return the client sort for locally sorted modes and the API sort otherwise."""
        if sort is not None and sort not in SORT_OPTIONS:
            raise ValueError(f"unknown sort: {sort}")
        if mode in CLIENT_SORT_MODES:
            return sort or "default"
        return REMOTE_SORT_ALIASES[sort] if sort else DEFAULT_REMOTE_SORT

    # tiers

    def _from_disk(self, mode: str, identifier: str, sort: Optional[str]) -> Optional[ResultSet]:
        if self.persistent_cache is None:
            return None
        disk_sort = None if mode in CLIENT_SORT_MODES else sort
        record = self.persistent_cache.read_record(self._disk_query(mode, identifier), mode, disk_sort)
        if record is None:
            return None
        ranked: List[RankedCandidate] = []
        if mode == "related" and record.extras:
            for entry, extra in zip(record.entries, record.extras):
                ranked.append(replace(RankedCandidate.from_dict({**extra, "entry": entry.to_dict()}), entry=entry))
        return ResultSet(
            mode=mode,
            identifier=identifier,
            sort=sort,
            entries=list(record.entries),
            total=record.total if record.total is not None else len(record.entries),
            complete=True,
            ranked=ranked,
        )

    def _to_disk(self, result: ResultSet) -> None:
        if self.persistent_cache is None or not result.complete:
            return
        extras = None
        if result.mode == "related":
            extras = []
            for item in result.ranked:
                data = item.to_dict()
                data.pop("entry", None)
                extras.append(data)
        disk_sort = None if result.mode in CLIENT_SORT_MODES else result.sort
        # host library state is refreshed on every load and never persisted
        entries = [replace(entry, local_item_id=None, is_related=False) for entry in result.entries]
        self.persistent_cache.write(
            self._disk_query(result.mode, result.identifier),
            result.mode,
            entries,
            disk_sort,
            total=result.total,
            extras=extras,
        )

    # network

    def _guarded(self, token: CancellationToken, callback: Optional[ProgressCallback]) -> Optional[ProgressCallback]:
        """Wrap a progress callback so snapshots of a superseded request are dropped."""
        if callback is None:
            return None

        def _emit(snapshot: Any) -> None:
            if self.supervisor.is_current(VIEW_REQUEST, token):
                callback(snapshot)

        return _emit

    def _fetch_references(
        self,
        recid: str,
        token: CancellationToken,
        on_progress: Optional[ProgressCallback],
    ) -> ResultSet:
        raw = self.client.fetch_references(recid, token=token)
        token.raise_if_cancelled()
        entries: List[Entry] = []
        total = len(raw)
        for index, wrapper in enumerate(raw):
            entries.append(build_reference_entry(wrapper, index))
            if on_progress is not None and (len(entries) % REFERENCE_SNAPSHOT_SIZE == 0 or index == total - 1):
                token.raise_if_cancelled()
                on_progress(
                    PageSnapshot(
                        entries=tuple(entries),
                        total_hits=total,
                        pages_fetched=(len(entries) + REFERENCE_SNAPSHOT_SIZE - 1) // REFERENCE_SNAPSHOT_SIZE,
                    )
                )
        return ResultSet(mode="references", identifier=recid, sort=None, entries=entries, total=total)

    def _fetch_list(
        self,
        mode: str,
        identifier: str,
        sort: Optional[str],
        token: CancellationToken,
        on_progress: Optional[ProgressCallback],
    ) -> ResultSet:
        result = self.pipeline.run(_list_query(mode, identifier), sort=sort, token=token, on_progress=on_progress)
        return ResultSet(
            mode=mode,
            identifier=identifier,
            sort=sort,
            entries=list(result.entries),
            total=result.total_hits,
            complete=result.complete,
        )

    def _load_references(self, recid: str, token: CancellationToken) -> Tuple[ResultSet, bool]:
        """Load and enrich a seed's references for ranking without emitting progress.

        Returns the references and whether they were fully enriched and committed.
        """
        key = self._memory_key("references", recid, None)
        cached = self.list_cache.get(key)
        if cached is not None:
            return cached, True
        result = self._from_disk("references", recid, None)
        source = "disk"
        if result is None:
            result = self._fetch_references(recid, token, None)
            source = "network"
        report = self.scheduler.enrich(result.entries, token=token)
        token.raise_if_cancelled()
        committed = not report.failures and not report.cancelled
        if committed:
            self.list_cache.set(key, result)
            if source == "network":
                self._to_disk(result)
        return result, committed

    def _fetch_related(
        self,
        seed_recid: str,
        token: CancellationToken,
        on_progress: Optional[ProgressCallback],
    ) -> ResultSet:
        references, committed = self._load_references(seed_recid, token)
        ranking = self.ranker.rank(seed_recid, references.entries, token=token, on_progress=on_progress)
        return ResultSet(
            mode="related",
            identifier=seed_recid,
            sort=None,
            entries=[item.entry for item in ranking.candidates],
            total=len(ranking.candidates),
            complete=committed and ranking.complete,
            ranked=ranking.candidates,
        )

    # public API

    def activate(
        self,
        mode: str,
        identifier: str,
        sort: Optional[str] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        notify: Optional[EntryCallback] = None,
        enrich: bool = True,
        current_item_id: Any = None,
    ) -> LoadOutcome:
        """Load a result set for a view, cancelling any previous view request.

        Args:
            mode (str): One of ``MODES``.
            identifier (str): Recid, author identifier, or search query.
            sort (Optional[str]): Client sort for references/related, remote sort otherwise.
            on_progress (Optional[ProgressCallback]): Receives immutable snapshots while fetching.
            notify (Optional[EntryCallback]): Called per entry updated by enrichment.
            enrich (bool): Run an enrichment pass after loading.
            current_item_id (Any): Host item the view belongs to.

        Returns:
            LoadOutcome: ``ready``, ``not_found``, ``error``, or ``superseded``.
        """
        if mode not in MODES:
            raise ValueError(f"unknown mode: {mode}")
        identifier = str(identifier).strip()
        sort = self._normalize_sort(mode, sort)
        self.supervisor.cancel(ENRICH_REQUEST)
        token = self.supervisor.begin(VIEW_REQUEST)
        try:
            return self._activate(mode, identifier, sort, token, on_progress, notify, enrich, current_item_id)
        except AbortedError:
            return LoadOutcome(state="superseded", mode=mode, identifier=identifier, sort=sort)
        except NotFoundError as exc:
            log_event("view_not_found", {"mode": mode, "identifier": identifier})
            return LoadOutcome(state="not_found", mode=mode, identifier=identifier, sort=sort, error=str(exc))
        except TransientNetworkError as exc:
            log_event("view_error", {"mode": mode, "identifier": identifier, "error": str(exc)})
            return LoadOutcome(state="error", mode=mode, identifier=identifier, sort=sort, error=str(exc))
        finally:
            self.supervisor.finish(VIEW_REQUEST, token)

    def _activate(
        self,
        mode: str,
        identifier: str,
        sort: Optional[str],
        token: CancellationToken,
        on_progress: Optional[ProgressCallback],
        notify: Optional[EntryCallback],
        enrich: bool,
        current_item_id: Any,
    ) -> LoadOutcome:
        key = self._memory_key(mode, identifier, sort)
        emit = self._guarded(token, on_progress)
        result = self.list_cache.get(key)
        source = "memory"
        if result is None:
            result = self._from_disk(mode, identifier, sort)
            source = "disk"
        if result is None:
            source = "network"
            if mode == "references":
                result = self._fetch_references(identifier, token, emit)
            elif mode == "related":
                result = self._fetch_related(identifier, token, emit)
            else:
                result = self._fetch_list(mode, identifier, sort, token, emit)
        if not self.supervisor.is_current(VIEW_REQUEST, token):
            raise AbortedError("view superseded")
        if source != "network" and emit is not None:
            # cached lists are shown before enrichment starts
            shown = sort_entries(result.entries, sort) if mode in CLIENT_SORT_MODES else result.entries
            emit(PageSnapshot(entries=tuple(shown), total_hits=result.total, pages_fetched=0))

        report: Optional[EnrichmentReport] = None
        if enrich and source != "memory":
            report = self.enrich_entries(result.entries, notify=notify, current_item_id=current_item_id)
            if not self.supervisor.is_current(VIEW_REQUEST, token):
                raise AbortedError("view superseded during enrichment")
        clean = report is None or (not report.failures and not report.cancelled)
        if result.complete and clean:
            self.list_cache.set(key, result)
            if source == "network":
                self._to_disk(result)

        entries = result.entries
        if mode in CLIENT_SORT_MODES:
            entries = sort_entries(entries, sort)
        log_event(
            "view_ready",
            {
                "mode": mode,
                "identifier": identifier,
                "sort": sort,
                "source": source,
                "count": len(entries),
                "complete": result.complete,
            },
        )
        return LoadOutcome(
            state="ready",
            mode=mode,
            identifier=identifier,
            sort=sort,
            entries=tuple(entries),
            ranked=tuple(result.ranked),
            total=result.total,
            source=source,
            complete=result.complete,
            enrichment=report,
        )

    def enrich_entries(
        self,
        entries: Sequence[Entry],
        *,
        notify: Optional[EntryCallback] = None,
        current_item_id: Any = None,
    ) -> EnrichmentReport:
        """Run an enrichment pass, cancelling any pass still in progress."""
        token = self.supervisor.begin(ENRICH_REQUEST)
        try:
            return self.scheduler.enrich(entries, token=token, notify=notify, current_item_id=current_item_id)
        finally:
            self.supervisor.finish(ENRICH_REQUEST, token)

    def cancel(self) -> None:
        """Cancel the active view request and enrichment pass."""
        self.supervisor.cancel_all()

    def apply_library_change(self, recid: str, item_id: Any = None) -> int:
        """Set ``local_item_id`` on every cached entry with ``recid``; ``None`` marks a deletion."""
        recid = str(recid)
        updated = 0
        for result in self.list_cache.values():
            for entry in result.entries:
                if entry.recid == recid and entry.local_item_id != item_id:
                    entry.local_item_id = item_id
                    if item_id is None:
                        entry.is_related = False
                    updated += 1
        return updated

    def fetch_abstract(self, recid: str) -> Optional[str]:
        """Fetch an abstract lazily and store it on cached entries with that recid."""
        recid = str(recid)
        abstract = self.abstract_cache.get(recid)
        if abstract is None:
            try:
                abstract = self.client.fetch_abstract(recid)
            except NotFoundError:
                return None
            if abstract is None:
                return None
            self.abstract_cache.set(recid, abstract)
        for result in self.list_cache.values():
            for entry in result.entries:
                if entry.recid == recid:
                    entry.abstract = abstract
        return abstract

    # cache maintenance

    def cache_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "memory": {
                "lists": self.list_cache.stats(),
                "metadata": self.metadata_cache.stats(),
                "abstracts": self.abstract_cache.stats(),
            },
            "disk": self.persistent_cache.stats() if self.persistent_cache is not None else None,
        }
        if self.fetcher is not None:
            stats["rate_limit"] = self.fetcher.status()
        return stats

    def purge_cache(self) -> int:
        return self.persistent_cache.purge_expired() if self.persistent_cache is not None else 0

    def clear_cache(self) -> int:
        """Clear every memory tier and delete all persistent files."""
        self.list_cache.clear()
        self.metadata_cache.clear()
        self.abstract_cache.clear()
        return self.persistent_cache.clear_all() if self.persistent_cache is not None else 0

    def set_cache_directory(self, directory: Path) -> Path:
        if self.persistent_cache is None:
            raise RefGraphError("persistent cache is disabled")
        return self.persistent_cache.reinit(directory)

    def close(self) -> None:
        self.supervisor.cancel_all()
        if self.persistent_cache is not None:
            self.persistent_cache.close()
        self.pipeline.close()
        self.ranker.close()
        self.scheduler.close()
        if self.fetcher is not None:
            self.fetcher.close()


def build_service(
    settings: Settings,
    *,
    session: Any = None,
    library: Optional[LocalLibrary] = None,
    schedule_purge: bool = True,
) -> ReferenceGraphService:
    """Build a service wired from settings, sharing one fetcher across every component."""
    fetcher = RateLimitedFetcher(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        max_concurrent=settings.rate_limit_max_concurrent,
        max_retries=settings.rate_limit_max_retries,
        timeout=settings.request_timeout_seconds,
        session=session,
    )
    client = InspireClient(fetcher, settings.api_base)
    persistent: Optional[PersistentCache] = None
    if settings.cache_enabled:
        persistent = PersistentCache(
            settings.cache_dir,
            ttl_hours=settings.cache_ttl_hours,
            compression=settings.cache_compression,
            split_threshold=settings.cache_split_threshold,
            write_debounce_seconds=settings.cache_write_debounce_seconds,
        )
        if schedule_purge:
            persistent.schedule_purge(settings.cache_purge_delay_seconds)
    params = RelatedParams(
        max_anchors=settings.related_max_anchors,
        per_anchor=settings.related_per_anchor,
        max_results=settings.related_max_results,
        exclude_reviews=settings.related_exclude_reviews,
        concurrency=settings.related_concurrency,
    )
    return ReferenceGraphService(
        client,
        persistent_cache=persistent,
        library=library,
        related_params=params,
        enrich_batch_size=settings.enrich_batch_size,
        enrich_parallelism=settings.enrich_parallelism,
        fetcher=fetcher,
    )
