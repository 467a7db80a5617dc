"""Tests for related-paper ranking."""

from __future__ import annotations

import math
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from refgraph.core.errors import AbortedError, TransientNetworkError
from refgraph.core.models import Entry
from refgraph.pipeline.cancellation import CancellationToken
from refgraph.services.related_papers import (
    UNKNOWN_ANCHOR_WEIGHT,
    RelatedParams,
    RelatedPapersRanker,
    RelatedProgress,
    RelatedRanking,
    _CandidateAgg,
    anchor_weight,
    co_citation_blend_weight,
    normalized_co_citation,
    rank_candidates,
    related_cache_digest,
    select_anchors,
)


def _hit(recid: int, *, cites: int = 10, year: str = "2020-01-01", title: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    data = {
        "control_number": recid,
        "titles": [{"title": title or f"Candidate {recid}"}],
        "authors": [{"full_name": "Author"}],
        "citation_count": cites,
        "earliest_date": year,
    }
    data.update(extra)
    return data


def _ref(recid: str, cites: Optional[int], title: str = "", **kwargs: Any) -> Entry:
    return Entry(id=f"ref-{recid}", recid=recid, title=title or f"Reference {recid}", authors=["A"], citation_count=cites, **kwargs)


class _FakeRelatedClient:
    def __init__(
        self,
        citing: Dict[str, List[Dict[str, Any]]],
        *,
        co_counts: Optional[Dict[str, int]] = None,
        seed_citations: int = 0,
        failing_anchors: Optional[set] = None,
        failing_co: Optional[set] = None,
        seed_count_fails: bool = False,
    ) -> None:
        self.citing = citing
        self.co_counts = co_counts or {}
        self.seed_citations = seed_citations
        self.failing_anchors = failing_anchors or set()
        self.failing_co = failing_co or set()
        self.seed_count_fails = seed_count_fails
        self.co_calls: List[str] = []
        self.top_calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def fetch_top_citing(self, recid: str, size: int, *, token=None) -> List[Dict[str, Any]]:
        with self._lock:
            self.top_calls.append({"recid": recid, "size": size})
        if recid in self.failing_anchors:
            raise TransientNetworkError("anchor fetch failed", status_code=502)
        return list(self.citing.get(recid, []))

    def count_co_citing(self, seed_recid: str, candidate_recid: str, *, token=None) -> int:
        with self._lock:
            self.co_calls.append(candidate_recid)
        if candidate_recid in self.failing_co:
            raise TransientNetworkError("co-citation count failed", status_code=503)
        return self.co_counts.get(candidate_recid, 0)

    def count_citing(self, recid: str, *, token=None) -> int:
        if self.seed_count_fails:
            raise TransientNetworkError("citing count failed", status_code=503)
        return self.seed_citations


def _ranking(client: _FakeRelatedClient, refs: List[Entry], params: Optional[RelatedParams] = None, **kwargs: Any) -> RelatedRanking:
    ranker = RelatedPapersRanker(client, params)
    try:
        return ranker.rank("1", refs, **kwargs)
    finally:
        ranker.close()


def _rank(client: _FakeRelatedClient, refs: List[Entry], params: Optional[RelatedParams] = None, **kwargs: Any):
    return _ranking(client, refs, params, **kwargs).candidates


def test_anchor_weight_values() -> None:
    assert anchor_weight(0) == pytest.approx(1.0)
    assert anchor_weight(None) == UNKNOWN_ANCHOR_WEIGHT
    assert anchor_weight(-3) == UNKNOWN_ANCHOR_WEIGHT
    weights = [anchor_weight(c) for c in (0, 5, 50, 500, 5000)]
    assert weights == sorted(weights, reverse=True)
    assert all(0 < w <= 1 for w in weights)


def test_blend_weight_bounds() -> None:
    assert co_citation_blend_weight(None) == 0.0
    assert co_citation_blend_weight(4) == 0.0
    assert co_citation_blend_weight(5) > 0.0
    assert co_citation_blend_weight(30) == pytest.approx(0.25)
    for count in (5, 30, 100, 10**6):
        assert 0.0 < co_citation_blend_weight(count) <= 0.5


def test_normalized_co_citation_is_clamped() -> None:
    assert normalized_co_citation(100, 1, 1) == 1.0
    assert normalized_co_citation(0, 50, 20) == 0.0
    assert normalized_co_citation(3, None, 20) == 0.0
    assert normalized_co_citation(3, 50, 0) == 0.0
    assert normalized_co_citation(3, 50, 20) == pytest.approx(3 / math.sqrt(1000))


def test_select_anchors_prefers_mid_cited_and_drops_pdg_reviews_duplicates() -> None:
    refs = [
        _ref("1", 2000),
        _ref("2", None),
        _ref("3", 2),
        _ref("4", 400),
        _ref("5", 60),
        _ref("6", 10),
        _ref("5", 60),
        _ref("7", 80, title="Review of Particle Physics"),
        _ref("8", 80, document_type=["review"]),
        Entry(id="x", recid=None, title="Unresolved", authors=["A"], citation_count=50),
    ]
    anchors = select_anchors(refs, 10)
    assert [a.recid for a in anchors] == ["5", "6", "4", "2", "3", "1"]

    with_reviews = select_anchors(refs, 10, exclude_reviews=False)
    assert "8" in [a.recid for a in with_reviews]
    assert "7" not in [a.recid for a in with_reviews]
    assert len(select_anchors(refs, 2)) == 2


def test_coupling_in_unit_interval_and_monotone_in_shared_anchors() -> None:
    aggregates = {
        "10": _CandidateAgg(entry=Entry(id="a", recid="10"), weighted_score=0.3, shared_anchors={"a", "b", "c"}),
        "11": _CandidateAgg(entry=Entry(id="b", recid="11"), weighted_score=0.1, shared_anchors={"a"}),
        "12": _CandidateAgg(entry=Entry(id="c", recid="12"), weighted_score=5.0, shared_anchors={"a"}),
    }
    ranked = rank_candidates(aggregates, total_anchor_weight=1.0, alpha=0.0)
    by_recid = {c.entry.recid: c for c in ranked}

    assert all(0.0 <= c.coupling_score <= 1.0 for c in ranked)
    assert by_recid["12"].coupling_score == 1.0
    assert by_recid["10"].coupling_score > by_recid["11"].coupling_score
    assert [c.entry.recid for c in ranked] == ["12", "10", "11"]


def test_ties_break_on_citations_then_year_then_recid() -> None:
    aggregates = {
        "30": _CandidateAgg(entry=Entry(id="a", recid="30", citation_count=5, year=2020), weighted_score=0.5, shared_anchors={"x"}),
        "20": _CandidateAgg(entry=Entry(id="b", recid="20", citation_count=9, year=2010), weighted_score=0.5, shared_anchors={"x"}),
        "40": _CandidateAgg(entry=Entry(id="c", recid="40", citation_count=5, year=2021), weighted_score=0.5, shared_anchors={"x"}),
        "10": _CandidateAgg(entry=Entry(id="d", recid="10", citation_count=5, year=2021), weighted_score=0.5, shared_anchors={"x"}),
    }
    ranked = rank_candidates(aggregates, 1.0, 0.0)
    assert [c.entry.recid for c in ranked] == ["20", "10", "40", "30"]


def test_citations_break_ties_before_shared_anchor_count() -> None:
    aggregates = {
        "1": _CandidateAgg(entry=Entry(id="a", recid="1", citation_count=3), weighted_score=0.5, shared_anchors={"x", "y", "z"}),
        "2": _CandidateAgg(entry=Entry(id="b", recid="2", citation_count=8), weighted_score=0.5, shared_anchors={"x"}),
    }
    ranked = rank_candidates(aggregates, 1.0, 0.0)
    assert [c.entry.recid for c in ranked] == ["2", "1"]


def test_end_to_end_combined_score() -> None:
    refs = [_ref(f"a{idx}", 5) for idx in range(10)]
    candidate = _hit(900, cites=20)
    citing = {f"a{idx}": [candidate] for idx in range(4)}
    client = _FakeRelatedClient(citing, co_counts={"900": 3})

    ranked = _rank(client, refs, seed_citation_count=50)

    assert len(ranked) == 1
    top = ranked[0]
    assert top.entry.recid == "900"
    assert top.entry.id == "related-1-900"
    assert top.shared_anchor_count == 4
    assert top.coupling_score == pytest.approx(0.4)
    assert top.co_citation_count == 3
    assert top.co_citation_score == pytest.approx(0.0949, abs=1e-4)
    assert top.combined_score == pytest.approx(0.2547, abs=1e-3)
    assert len(top.shared_anchor_titles) == 3


def test_low_cited_seed_skips_co_citation() -> None:
    refs = [_ref("a", 20), _ref("b", 20)]
    client = _FakeRelatedClient({"a": [_hit(50)], "b": [_hit(50), _hit(51)]}, seed_citations=4)

    ranked = _rank(client, refs)

    assert client.co_calls == []
    assert [c.entry.recid for c in ranked] == ["50", "51"]
    assert all(c.co_citation_score is None for c in ranked)
    assert all(c.combined_score == c.coupling_score for c in ranked)


def test_only_top_candidates_get_co_citation_refinement() -> None:
    refs = [_ref("a", 20), _ref("b", 20)]
    client = _FakeRelatedClient({"a": [_hit(50), _hit(51)], "b": [_hit(50)]}, co_counts={"50": 4, "51": 9})
    params = RelatedParams(co_citation_top_n=1)

    ranked = _rank(client, refs, params, seed_citation_count=100)
    by_recid = {c.entry.recid: c for c in ranked}

    assert client.co_calls == ["50"]
    assert by_recid["50"].co_citation_score is not None
    assert by_recid["51"].co_citation_score is None
    assert by_recid["51"].combined_score == by_recid["51"].coupling_score


def test_candidates_exclude_seed_references_pdg_and_reviews() -> None:
    refs = [_ref("a", 20), _ref("b", 20)]
    hits = [
        _hit(1),
        _hit(2000, title="Review of Particle Physics"),
        _hit(2001, document_type=["review"]),
        _hit(2002, publication_info=[{"journal_title": "Rev.Mod.Phys."}]),
        {"control_number": "b", "titles": [{"title": "Already a reference"}]},
        _hit(77),
    ]
    client = _FakeRelatedClient({"a": hits})

    ranked = _rank(client, refs, seed_citation_count=0)
    assert [c.entry.recid for c in ranked] == ["77"]

    ranked_with_reviews = _rank(_FakeRelatedClient({"a": hits}), refs, RelatedParams(exclude_reviews=False), seed_citation_count=0)
    assert {c.entry.recid for c in ranked_with_reviews} == {"77", "2001", "2002"}


def test_progress_snapshots_and_anchor_failures_degrade() -> None:
    refs = [_ref("a", 20), _ref("b", 30), _ref("c", 40)]
    client = _FakeRelatedClient({"a": [_hit(50)], "c": [_hit(51)]}, failing_anchors={"b"})
    progress: List[RelatedProgress] = []

    ranking = _ranking(client, refs, RelatedParams(per_anchor=7), seed_citation_count=0, on_progress=progress.append)

    assert [p.processed_anchors for p in progress] == [1, 2, 3]
    assert all(p.total_anchors == 3 for p in progress)
    assert {c.entry.recid for c in ranking.candidates} == {"50", "51"}
    assert ranking.failed_anchors == ("b",)
    assert not ranking.complete
    assert {call["size"] for call in client.top_calls} == {7}


def test_max_results_and_empty_references() -> None:
    refs = [_ref("a", 20)]
    client = _FakeRelatedClient({"a": [_hit(n) for n in range(100, 110)]})
    assert len(_rank(client, refs, RelatedParams(max_results=3), seed_citation_count=0)) == 3
    assert _rank(client, [], seed_citation_count=0) == []


def test_every_anchor_failing_raises_transient_error() -> None:
    refs = [_ref("a", 20), _ref("b", 30)]
    client = _FakeRelatedClient({}, failing_anchors={"a", "b"})
    with pytest.raises(TransientNetworkError) as excinfo:
        _ranking(client, refs, seed_citation_count=0)
    assert excinfo.value.status_code == 502


def test_failed_co_citation_keeps_coupling_and_marks_incomplete() -> None:
    refs = [_ref("a", 20), _ref("b", 20)]
    client = _FakeRelatedClient({"a": [_hit(50), _hit(51)], "b": [_hit(50)]}, co_counts={"50": 4}, failing_co={"51"})

    ranking = _ranking(client, refs, seed_citation_count=100)
    by_recid = {c.entry.recid: c for c in ranking.candidates}

    assert ranking.failed_co_citations == ("51",)
    assert not ranking.complete
    assert by_recid["50"].co_citation_score is not None
    assert by_recid["51"].co_citation_score is None
    assert by_recid["51"].combined_score == by_recid["51"].coupling_score


def test_failed_seed_count_disables_blend_and_marks_incomplete() -> None:
    refs = [_ref("a", 20)]
    client = _FakeRelatedClient({"a": [_hit(50)]}, seed_count_fails=True)

    ranking = _ranking(client, refs)

    assert ranking.seed_count_failed
    assert not ranking.complete
    assert client.co_calls == []
    assert [c.entry.recid for c in ranking.candidates] == ["50"]


def test_successful_ranking_is_complete() -> None:
    client = _FakeRelatedClient({"a": [_hit(50)]}, co_counts={"50": 2})
    ranking = _ranking(client, [_ref("a", 20)], seed_citation_count=40)
    assert ranking.complete
    assert _ranking(client, [], seed_citation_count=0).complete


def test_cancelled_token_aborts_ranking() -> None:
    token = CancellationToken()
    token.cancel()
    client = _FakeRelatedClient({"a": [_hit(50)]})
    with pytest.raises(AbortedError):
        _rank(client, [_ref("a", 20)], token=token, seed_citation_count=0)


def test_cache_digest_tracks_preferences() -> None:
    base = related_cache_digest("1", RelatedParams())
    assert base == related_cache_digest("1", RelatedParams())
    assert base != related_cache_digest("2", RelatedParams())
    assert base != related_cache_digest("1", RelatedParams(max_results=10))
    assert base != related_cache_digest("1", RelatedParams(exclude_reviews=False))
    assert base == related_cache_digest("1", RelatedParams(concurrency=5))
