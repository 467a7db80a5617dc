"""Tests for client-side sorting, quick filters, and list statistics."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from refgraph.core.models import Entry
from refgraph.services.entry_filters import (
    entry_statistics,
    filter_entries,
    h_index,
    matches_text,
    sort_entries,
    toggle_quick_filter,
)
from refgraph.services.reviews import is_pdg_review_title, is_review_entry, is_review_journal


def _entries():
    return [
        Entry(id="0", recid="1", title="Gauge theories", year=2019, authors=["Weinberg, S."], citation_count=120,
              citation_count_without_self=100, publication_info={"journal_title": "Phys.Rev.D"}),
        Entry(id="1", recid="2", title="Axion dark matter", year=2024, authors=["Doe, J."], citation_count=3,
              arxiv_id="2401.00001", local_item_id=42, is_related=True),
        Entry(id="2", recid=None, title="Lecture notes", year=None, authors=["Roe, R."], citation_count=None),
        Entry(id="3", recid="4", title="A review of neutrinos", year=2022, authors=["Poe, P."], citation_count=60,
              publication_info={"journal_title": "Rev.Mod.Phys."}),
    ]


def test_sort_year_and_citations_are_stable() -> None:
    entries = _entries()
    assert [e.id for e in sort_entries(entries, "yearDesc")] == ["1", "3", "0", "2"]
    assert [e.id for e in sort_entries(entries, "citationDesc")] == ["0", "3", "1", "2"]
    assert [e.id for e in sort_entries(entries, "default")] == ["0", "1", "2", "3"]
    assert [e.id for e in entries] == ["0", "1", "2", "3"]


def test_sort_citations_excluding_self() -> None:
    entries = [
        Entry(id="a", citation_count=100, citation_count_without_self=10),
        Entry(id="b", citation_count=50, citation_count_without_self=40),
    ]
    assert [e.id for e in sort_entries(entries, "citationDesc", exclude_self=True)] == ["b", "a"]


def test_quick_filters_combine_with_and() -> None:
    entries = _entries()
    assert [e.id for e in filter_entries(entries, quick_filters=["highCitations"])] == ["0", "3"]
    assert [e.id for e in filter_entries(entries, quick_filters=["recent5Years"], current_year=2024)] == ["1", "3"]
    assert [e.id for e in filter_entries(entries, quick_filters=["recent1Year"], current_year=2024)] == ["1"]
    assert [e.id for e in filter_entries(entries, quick_filters=["preprintOnly"])] == ["1"]
    assert [e.id for e in filter_entries(entries, quick_filters=["publishedOnly", "nonReviewOnly"])] == ["0"]
    assert [e.id for e in filter_entries(entries, quick_filters=["localItems", "relatedOnly"])] == ["1"]
    assert [e.id for e in filter_entries(entries, quick_filters=["onlineItems"])] == ["0", "2", "3"]


def test_toggle_quick_filter_drops_exclusive_partner() -> None:
    active = toggle_quick_filter({"recent5Years", "highCitations"}, "recent1Year")
    assert active == {"recent1Year", "highCitations"}
    assert toggle_quick_filter(active, "recent1Year") == {"highCitations"}
    with pytest.raises(ValueError):
        toggle_quick_filter(set(), "bogus")


def test_text_filter_requires_every_token() -> None:
    entry = _entries()[0]
    assert matches_text(entry, "gauge weinberg")
    assert matches_text(entry, "2019 phys.rev")
    assert not matches_text(entry, "gauge axion")
    assert matches_text(entry, "   ")
    assert [e.id for e in filter_entries(_entries(), text="dark")] == ["1"]


def test_statistics_and_h_index() -> None:
    stats = entry_statistics(_entries())
    assert stats["count"] == 4
    assert stats["with_recid"] == 3
    assert stats["local_count"] == 1
    assert stats["total_citations"] == 183
    assert stats["year_histogram"] == {2019: 1, 2022: 1, 2024: 1}
    assert stats["h_index"] == 3
    assert h_index([]) == 0
    assert h_index([10, 8, 5, 4, 3]) == 4


def test_review_heuristics() -> None:
    assert is_pdg_review_title("Review of Particle Physics")
    assert not is_pdg_review_title("Particle physics phenomenology")
    assert is_review_journal({"journal_title": "Annu.Rev.Nucl.Part.Sci."})
    assert is_review_journal([{"journal_title_abbrev": "Phys.Rept."}])
    assert not is_review_journal({"journal_title": "JHEP"})
    assert is_review_entry(Entry(id="x", document_type=["review"]))
    assert not is_review_entry(Entry(id="y", document_type=["article"]))
