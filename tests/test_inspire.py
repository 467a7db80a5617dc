"""Tests for literature API normalization and the thin client."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from refgraph.core.errors import NotFoundError, TransientNetworkError
from refgraph.core.models import Entry
from refgraph.integrations.inspire import (
    InspireClient,
    apply_metadata,
    build_entry_from_hit,
    build_reference_entry,
    extract_recid_from_ref,
    extract_recid_from_url,
    is_metadata_complete,
    is_placeholder_title,
    needs_enrichment,
    normalize_arxiv_id,
    split_publication_info,
)
from refgraph.services.rate_limit import FetchResponse


class _FakeFetcher:
    def __init__(self, responses: Dict[str, Any]) -> None:
        self.responses = responses
        self.calls: List[Dict[str, Any]] = []

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None, *, token=None) -> FetchResponse:
        self.calls.append({"url": url, "params": dict(params or {})})
        key = (params or {}).get("q") or url
        payload = self.responses.get(key)
        if payload is None:
            return FetchResponse(url=url, status_code=404, not_found=True)
        return FetchResponse(url=url, status_code=200, payload=payload)


def _search_payload(total: int, hits: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"hits": {"total": total, "hits": [{"metadata": hit} for hit in hits]}}


def test_recid_extraction_helpers() -> None:
    assert extract_recid_from_ref("https://inspirehep.net/api/literature/451647") == "451647"
    assert extract_recid_from_ref("https://inspirehep.net/api/literature/451647?format=json") == "451647"
    assert extract_recid_from_ref(None) is None
    assert extract_recid_from_url("https://inspirehep.net/record/12345") == "12345"
    assert extract_recid_from_url("https://example.org/paper") is None


def test_normalize_arxiv_id() -> None:
    assert normalize_arxiv_id("arXiv:hep-th/9711200") == "hep-th/9711200"
    assert normalize_arxiv_id({"value": "1207.7214"}) == "1207.7214"
    assert normalize_arxiv_id(42) is None


def test_split_publication_info_separates_errata() -> None:
    primary, errata = split_publication_info(
        [
            {"journal_title": "Phys.Rev.D", "journal_volume": "10"},
            {"journal_title": "Phys.Rev.D", "material": "erratum"},
        ]
    )
    assert primary == {"journal_title": "Phys.Rev.D", "journal_volume": "10"}
    assert errata[0]["label"] == "Erratum"
    assert split_publication_info(None) == (None, [])


def test_build_reference_entry_from_wrapper() -> None:
    wrapper = {
        "record": {"$ref": "https://inspirehep.net/api/literature/4328"},
        "reference": {
            "title": {"title": "The Large N limit of superconformal field theories"},
            "authors": [{"full_name": "Maldacena, Juan Martin"}],
            "publication_info": {"journal_title": "Adv.Theor.Math.Phys.", "year": 1998},
            "arxiv_eprint": "hep-th/9711200",
            "label": "1",
        },
    }
    entry = build_reference_entry(wrapper, 0)

    assert entry.id == "0-4328"
    assert entry.recid == "4328"
    assert entry.title.startswith("The Large N limit")
    assert entry.authors == ["Maldacena, Juan Martin"]
    assert entry.year == 1998
    assert entry.arxiv_id == "hep-th/9711200"
    assert entry.citation_count is None


def test_unresolved_reference_uses_label_in_id() -> None:
    entry = build_reference_entry({"reference": {"label": "12", "misc": ["private communication"]}}, 4)
    assert entry.id == "4-12"
    assert entry.recid is None
    assert not needs_enrichment(entry)


def test_large_collaboration_keeps_first_author_only() -> None:
    authors = [{"full_name": f"Member {idx}"} for idx in range(30)]
    entry = build_entry_from_hit({"control_number": 1, "titles": [{"title": "Observation"}], "authors": authors, "author_count": 2900}, 0)
    assert entry.authors == ["Member 0"]
    assert entry.total_authors == 2900


def test_build_entry_from_hit_normalizes_fields() -> None:
    hit = {
        "metadata": {
            "control_number": 1124337,
            "titles": [{"title": "Observation of a new particle"}],
            "authors": [{"full_name": "Aad, Georges"}],
            "earliest_date": "2012-07-31",
            "citation_count": 15000,
            "citation_count_without_self_citations": 14000,
            "arxiv_eprints": [{"value": "1207.7214"}],
            "dois": [{"value": "10.1016/j.physletb.2012.08.020"}],
            "document_type": ["article"],
        }
    }
    entry = build_entry_from_hit(hit, 3, prefix="citedBy")

    assert entry.id == "citedBy-3-1124337"
    assert entry.year == 2012
    assert entry.citation_score() == 14000
    assert entry.doi == "10.1016/j.physletb.2012.08.020"
    assert entry.document_type == ["article"]


def test_placeholder_titles_and_enrichment_need() -> None:
    assert is_placeholder_title(Entry(id="a", title=""))
    assert is_placeholder_title(Entry(id="a", title="Title unavailable"))
    assert is_placeholder_title(Entry(id="a", title="Truncated at a hyph-"))
    assert not is_placeholder_title(Entry(id="a", title="Complete title"))

    assert needs_enrichment(Entry(id="a", recid="1", title="T", authors=["A"]))
    assert not needs_enrichment(Entry(id="a", recid="1", title="T", authors=["A"], citation_count=0))
    assert needs_enrichment(Entry(id="a", recid="1", title="T", authors=["Unknown author"], citation_count=3))


def test_apply_metadata_fills_missing_fields_only() -> None:
    entry = Entry(id="0-1", recid="1", title="", authors=[], year=None)
    changed = apply_metadata(
        entry,
        {
            "titles": [{"title": "Filled title"}],
            "authors": [{"full_name": "Doe, J."}],
            "author_count": 3,
            "citation_count": 12,
            "earliest_date": "1999-01-01",
            "publication_info": [{"journal_title": "JHEP", "year": 1999}],
        },
    )
    assert changed is True
    assert entry.title == "Filled title"
    assert entry.authors == ["Doe, J."]
    assert entry.total_authors == 3
    assert entry.citation_count == 12
    assert entry.year == 1999
    assert apply_metadata(entry, {"citation_count": 12}) is False
    assert apply_metadata(entry, None) is False


def test_is_metadata_complete() -> None:
    assert is_metadata_complete({"titles": [{"title": "T"}], "authors": [{"full_name": "A"}], "citation_count": 0})
    assert not is_metadata_complete({"titles": [{"title": "T"}], "authors": [{"full_name": "A"}]})
    assert not is_metadata_complete(None)


def test_client_search_page_builds_params_and_parses_hits() -> None:
    fetcher = _FakeFetcher({"a Ellis": _search_payload(2, [{"control_number": 1}, {"control_number": 2}])})
    client = InspireClient(fetcher, "https://api.test/")
    page = client.search_page("a Ellis", page=2, size=250, sort="mostrecent")

    assert page.total == 2
    assert [hit["control_number"] for hit in page.hits] == [1, 2]
    call = fetcher.calls[0]
    assert call["url"] == "https://api.test/literature"
    assert call["params"]["page"] == 2
    assert call["params"]["sort"] == "mostrecent"


def test_client_not_found_and_malformed_envelope() -> None:
    fetcher = _FakeFetcher({"broken": {"unexpected": True}})
    client = InspireClient(fetcher, "https://api.test")
    with pytest.raises(NotFoundError):
        client.search_page("nothing")
    with pytest.raises(NotFoundError):
        client.fetch_record("999")
    with pytest.raises(TransientNetworkError):
        client.search_page("broken")


def test_client_counts_treat_404_as_zero() -> None:
    fetcher = _FakeFetcher({"refersto:recid:1 AND refersto:recid:2": _search_payload(7, [])})
    client = InspireClient(fetcher, "https://api.test")
    assert client.count_co_citing("1", "2") == 7
    assert client.count_citing("1") == 0
    assert fetcher.calls[0]["params"]["size"] == 1


def test_client_metadata_batch_and_references() -> None:
    fetcher = _FakeFetcher(
        {
            "recid:1 OR recid:2": _search_payload(2, [{"control_number": 1, "titles": [{"title": "One"}]}, {"control_number": 2}]),
            "https://api.test/literature/5": {"metadata": {"references": [{"reference": {"label": "1"}}, "junk"]}},
        }
    )
    client = InspireClient(fetcher, "https://api.test")
    batch = client.fetch_metadata_batch(["1", "2", "1", ""])
    assert set(batch) == {"1", "2"}
    assert client.fetch_references("5") == [{"reference": {"label": "1"}}]


def test_client_fetch_abstract_prefers_arxiv() -> None:
    fetcher = _FakeFetcher(
        {
            "https://api.test/literature/9": {
                "metadata": {
                    "abstracts": [
                        {"source": "Elsevier", "value": "Publisher abstract"},
                        {"source": "arXiv", "value": " arXiv abstract "},
                    ]
                }
            }
        }
    )
    client = InspireClient(fetcher, "https://api.test")
    assert client.fetch_abstract("9") == "arXiv abstract"
