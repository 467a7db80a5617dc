"""Related-papers ranking: weighted bibliographic coupling blended with budgeted co-citation."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from refgraph.core.config import hash_config_dict
from refgraph.core.errors import TransientNetworkError
from refgraph.core.logging_utils import log_event
from refgraph.core.models import Entry, RankedCandidate
from refgraph.integrations.inspire import InspireClient, build_entry_from_hit
from refgraph.pipeline.cancellation import CancellationToken, wait_for
from refgraph.services.reviews import (
    is_pdg_review_title,
    is_review_document_type,
    is_review_entry,
    is_review_journal,
)

RELATED_PAPERS_ALGORITHM_VERSION = 4
RELATED_COCITATION_TOP_N = 25
RELATED_COCITATION_MIN_CITATIONS = 5
RELATED_COCITATION_SIGMOID_CENTER = 30
RELATED_COCITATION_SIGMOID_SLOPE = 0.15
RELATED_COCITATION_MAX_WEIGHT = 0.5

ANCHOR_CITATIONS_MIN = 5
ANCHOR_CITATIONS_MAX = 300
ANCHOR_CITATIONS_TOO_HIGH = 1500
ANCHOR_TARGET_CITATIONS = 50
UNKNOWN_ANCHOR_WEIGHT = 0.25
_MIN_TOTAL_WEIGHT = 0.0001


@dataclass(frozen=True)
class RelatedParams:
    """User-facing knobs of the ranking; all of them are part of the cache key."""

    max_anchors: int = 15
    per_anchor: int = 25
    max_results: int = 50
    exclude_reviews: bool = True
    concurrency: int = 2
    co_citation_top_n: int = RELATED_COCITATION_TOP_N


@dataclass(frozen=True)
class Anchor:
    recid: str
    title: str
    weight: float
    citations: Optional[int] = None


@dataclass(frozen=True)
class RelatedProgress:
    """Coupling-only ranking after ``processed_anchors`` anchors."""

    processed_anchors: int
    total_anchors: int
    candidates: Tuple[RankedCandidate, ...]


@dataclass(frozen=True)
class RelatedRanking:
    """Ranked candidates plus the lookups that failed while building them.

    A ranking with any failed lookup is usable for display but is not
    ``complete`` and must not be cached.
    """

    candidates: List[RankedCandidate] = field(default_factory=list)
    failed_anchors: Tuple[str, ...] = ()
    failed_co_citations: Tuple[str, ...] = ()
    seed_count_failed: bool = False

    @property
    def complete(self) -> bool:
        return not (self.failed_anchors or self.failed_co_citations or self.seed_count_failed)


@dataclass
class _CandidateAgg:
    entry: Entry
    weighted_score: float = 0.0
    shared_anchors: Set[str] = field(default_factory=set)
    shared_titles: List[str] = field(default_factory=list)
    co_citation_count: Optional[int] = None
    co_citation_score: Optional[float] = None


def _sigmoid(x: float) -> float:
    """Internal helper for sigmoid."""
    return 1.0 / (1.0 + math.exp(-x))


def _finite_non_negative(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return float(value)


def anchor_weight(citation_count: Optional[int]) -> float:
    """Return ``1 / (1 + ln(1 + c))``; unknown counts get a fixed low weight."""
    count = _finite_non_negative(citation_count)
    if count is None:
        return UNKNOWN_ANCHOR_WEIGHT
    return 1.0 / (1.0 + math.log1p(count))


def co_citation_blend_weight(seed_citation_count: Optional[int]) -> float:
    """Return alpha in [0, 0.5]; seeds below the minimum citation count get 0."""
    count = _finite_non_negative(seed_citation_count)
    if count is None or count < RELATED_COCITATION_MIN_CITATIONS:
        return 0.0
    x = RELATED_COCITATION_SIGMOID_SLOPE * (count - RELATED_COCITATION_SIGMOID_CENTER)
    weight = RELATED_COCITATION_MAX_WEIGHT * _sigmoid(x)
    if not math.isfinite(weight) or weight <= 0:
        return 0.0
    return min(RELATED_COCITATION_MAX_WEIGHT, weight)


def normalized_co_citation(
    co_cited: Optional[int],
    seed_citation_count: Optional[int],
    candidate_citation_count: Optional[int],
) -> float:
    """Return ``co / sqrt(seed * candidate)`` clamped to [0, 1]."""
    co = _finite_non_negative(co_cited)
    seed = _finite_non_negative(seed_citation_count)
    cand = _finite_non_negative(candidate_citation_count)
    if not co or not seed or not cand:
        return 0.0
    denom = math.sqrt(seed * cand)
    if not math.isfinite(denom) or denom <= 0:
        return 0.0
    return min(1.0, max(0.0, co / denom))


def _anchor_priority(citations: Optional[int]) -> int:
    """Lower is better: mid-cited first, then highly cited, unknown, rarely cited, generic."""
    if citations is None:
        return 2
    if citations < ANCHOR_CITATIONS_MIN:
        return 3
    if citations <= ANCHOR_CITATIONS_MAX:
        return 0
    if citations <= ANCHOR_CITATIONS_TOO_HIGH:
        return 1
    return 4


def select_anchors(
    seed_references: Sequence[Entry],
    max_anchors: int,
    *,
    exclude_reviews: bool = True,
) -> List[Anchor]:
    """Choose up to ``max_anchors`` references to seed the coupling comparison.

    References without a recid, duplicates, and the Review of Particle
    Physics are dropped; review articles are dropped when ``exclude_reviews``.
    """
    seen: Set[str] = set()
    ranked: List[Tuple[int, float, int, Anchor]] = []
    for index, entry in enumerate(seed_references):
        if is_pdg_review_title(entry.title):
            continue
        if exclude_reviews and is_review_entry(entry):
            continue
        recid = entry.recid
        if not recid or recid in seen:
            continue
        seen.add(recid)
        citations = entry.citation_score()
        distance = (
            math.inf
            if citations is None
            else abs(math.log10(citations + 1) - math.log10(ANCHOR_TARGET_CITATIONS + 1))
        )
        anchor = Anchor(
            recid=recid,
            title=entry.title.strip() or recid,
            weight=anchor_weight(citations),
            citations=citations,
        )
        ranked.append((_anchor_priority(citations), distance, index, anchor))
    ranked.sort(key=lambda item: (item[0], item[1], item[2]))
    return [item[3] for item in ranked[: max(0, int(max_anchors))]]


def _sort_key(candidate: RankedCandidate) -> Tuple[Any, ...]:
    entry = candidate.entry
    cites = entry.citation_score()
    return (
        -candidate.combined_score,
        -candidate.coupling_score,
        -(cites if cites is not None else -1),
        -candidate.shared_anchor_count,
        -(entry.year if entry.year is not None else -math.inf),
        str(entry.recid or ""),
    )


def rank_candidates(
    aggregates: Mapping[str, _CandidateAgg],
    total_anchor_weight: float,
    alpha: float,
    max_results: Optional[int] = None,
) -> List[RankedCandidate]:
    """Score aggregated candidates and sort them deterministically.

    Candidates with a co-citation score get the convex blend; the rest keep
    their coupling score.
    """
    total = max(_MIN_TOTAL_WEIGHT, total_anchor_weight)
    alpha = max(0.0, min(RELATED_COCITATION_MAX_WEIGHT, alpha))
    out: List[RankedCandidate] = []
    for agg in aggregates.values():
        coupling = min(1.0, max(0.0, agg.weighted_score / total))
        co_score = agg.co_citation_score
        if co_score is not None and alpha > 0:
            combined = (1.0 - alpha) * coupling + alpha * co_score
        else:
            combined = coupling
        out.append(
            RankedCandidate(
                entry=agg.entry,
                coupling_score=coupling,
                combined_score=combined,
                co_citation_score=co_score,
                co_citation_count=agg.co_citation_count,
                shared_anchor_count=len(agg.shared_anchors),
                shared_anchor_titles=list(agg.shared_titles),
            )
        )
    out.sort(key=_sort_key)
    if max_results is not None:
        out = out[: max(0, int(max_results))]
    return out


def related_cache_digest(seed_recid: str, params: RelatedParams) -> str:
    """Hash of the seed, the algorithm version, and every preference that changes the ranking."""
    return hash_config_dict(
        {
            "algorithm_version": RELATED_PAPERS_ALGORITHM_VERSION,
            "seed": str(seed_recid),
            "max_anchors": params.max_anchors,
            "per_anchor": params.per_anchor,
            "max_results": params.max_results,
            "exclude_reviews": params.exclude_reviews,
            "co_citation_top_n": params.co_citation_top_n,
        }
    )


class RelatedPapersRanker:
    """Rank papers related to a seed through its references and citers."""

    def __init__(
        self,
        client: InspireClient,
        params: Optional[RelatedParams] = None,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.client = client
        self.params = params or RelatedParams()
        self._executor = executor
        self._owns_executor = executor is None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, self.params.concurrency), thread_name_prefix="refgraph-related"
            )
        return self._executor

    def _top_citing(self, anchor: Anchor, token: Optional[CancellationToken]) -> List[Dict[str, Any]]:
        return self.client.fetch_top_citing(anchor.recid, self.params.per_anchor, token=token)

    def _co_cited(self, seed_recid: str, candidate_recid: str, token: Optional[CancellationToken]) -> int:
        return self.client.count_co_citing(seed_recid, candidate_recid, token=token)

    def _accept_hit(self, metadata: Dict[str, Any], excluded: Set[str]) -> Optional[str]:
        recid = str(metadata.get("control_number") or "")
        if not recid or recid in excluded:
            return None
        titles = metadata.get("titles")
        first_title = titles[0].get("title") if isinstance(titles, list) and titles and isinstance(titles[0], dict) else ""
        if is_pdg_review_title(first_title):
            return None
        if self.params.exclude_reviews and (
            is_review_document_type(metadata.get("document_type")) or is_review_journal(metadata.get("publication_info"))
        ):
            return None
        return recid

    def rank(
        self,
        seed_recid: str,
        seed_references: Sequence[Entry],
        *,
        seed_citation_count: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[RelatedProgress], None]] = None,
    ) -> RelatedRanking:
        """Rank candidates related to ``seed_recid``.

        A failed anchor lowers scores but does not stop the ranking; a failed
        co-citation lookup leaves that candidate with its coupling score.
        Either marks the ranking incomplete.

        Args:
            seed_recid (str): Seed record id.
            seed_references (Sequence[Entry]): The seed's reference list.
            seed_citation_count (Optional[int]): Seed citations; fetched when omitted.
            token (Optional[CancellationToken]): Token checked before each merge.
            on_progress (Optional[Callable[[RelatedProgress], None]]): Receives coupling-only snapshots.

        Returns:
            RelatedRanking: Up to ``max_results`` candidates, best first, and the failed lookups.

        Raises:
            TransientNetworkError: Every anchor lookup failed.
        """
        params = self.params
        anchors = select_anchors(seed_references, params.max_anchors, exclude_reviews=params.exclude_reviews)
        if not anchors:
            return RelatedRanking()
        total_weight = sum(a.weight for a in anchors if math.isfinite(a.weight))
        excluded = {str(seed_recid)} | {ref.recid for ref in seed_references if ref.recid}
        aggregates: Dict[str, _CandidateAgg] = {}
        failed_anchors: List[str] = []
        last_error: Optional[TransientNetworkError] = None

        futures = [self._pool().submit(self._top_citing, anchor, token) for anchor in anchors]
        for processed, (anchor, future) in enumerate(zip(anchors, futures), start=1):
            try:
                hits = wait_for(future, token)
            except TransientNetworkError as exc:
                log_event("related_anchor_failed", {"anchor": anchor.recid, "error": str(exc)})
                failed_anchors.append(anchor.recid)
                last_error = exc
                hits = []
            if token is not None:
                token.raise_if_cancelled()
            for metadata in hits:
                recid = self._accept_hit(metadata, excluded)
                if recid is None:
                    continue
                agg = aggregates.get(recid)
                if agg is None:
                    entry = build_entry_from_hit(metadata, len(aggregates), prefix="related")
                    entry.id = f"related-{seed_recid}-{recid}"
                    agg = _CandidateAgg(entry=entry)
                    aggregates[recid] = agg
                if anchor.recid in agg.shared_anchors:
                    continue
                agg.shared_anchors.add(anchor.recid)
                agg.weighted_score += anchor.weight
                if len(agg.shared_titles) < 3:
                    agg.shared_titles.append(anchor.title)
            if on_progress is not None:
                snapshot = rank_candidates(aggregates, total_weight, 0.0, params.max_results)
                on_progress(RelatedProgress(processed_anchors=processed, total_anchors=len(anchors), candidates=tuple(snapshot)))

        if last_error is not None and len(failed_anchors) == len(anchors):
            raise TransientNetworkError(
                f"all {len(anchors)} anchor lookups failed: {last_error}",
                status_code=last_error.status_code,
            )

        seed_count_failed = False
        seed_citations = seed_citation_count
        if seed_citations is None:
            try:
                seed_citations = self.client.count_citing(seed_recid, token=token)
            except TransientNetworkError as exc:
                log_event("related_seed_count_failed", {"seed": seed_recid, "error": str(exc)})
                seed_count_failed = True
                seed_citations = 0
        alpha = co_citation_blend_weight(seed_citations)
        failed_co_citations: List[str] = []
        if alpha > 0 and aggregates:
            top = rank_candidates(aggregates, total_weight, 0.0, min(params.co_citation_top_n, len(aggregates)))
            targets = [c.entry.recid for c in top if c.entry.recid]
            co_futures = [self._pool().submit(self._co_cited, seed_recid, recid, token) for recid in targets]
            for recid, future in zip(targets, co_futures):
                try:
                    co_cited = wait_for(future, token)
                except TransientNetworkError as exc:
                    log_event("related_cocitation_failed", {"candidate": recid, "error": str(exc)})
                    failed_co_citations.append(recid)
                    continue
                if token is not None:
                    token.raise_if_cancelled()
                agg = aggregates[recid]
                agg.co_citation_count = co_cited or None
                agg.co_citation_score = normalized_co_citation(co_cited, seed_citations, agg.entry.citation_score())

        ranked = rank_candidates(aggregates, total_weight, alpha, params.max_results)
        result = RelatedRanking(
            candidates=ranked,
            failed_anchors=tuple(failed_anchors),
            failed_co_citations=tuple(failed_co_citations),
            seed_count_failed=seed_count_failed,
        )
        log_event(
            "related_ranked",
            {
                "seed": seed_recid,
                "anchors": len(anchors),
                "candidates": len(aggregates),
                "alpha": round(alpha, 4),
                "returned": len(ranked),
                "complete": result.complete,
                "algorithm_version": RELATED_PAPERS_ALGORITHM_VERSION,
            },
        )
        return result

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
