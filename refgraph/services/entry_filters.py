"""Client-side sorting, quick filters, text filtering, and list statistics for entry lists."""

from __future__ import annotations

import re
from collections import Counter
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from refgraph.core.models import Entry
from refgraph.services.reviews import is_review_entry

HIGH_CITATIONS_THRESHOLD = 50

REFERENCE_SORT_OPTIONS = ("default", "yearDesc", "citationDesc")
REMOTE_SORT_OPTIONS = ("mostrecent", "mostcited")
SORT_OPTIONS = REFERENCE_SORT_OPTIONS + REMOTE_SORT_OPTIONS

QUICK_FILTER_TYPES = (
    "highCitations",
    "recent5Years",
    "recent1Year",
    "publishedOnly",
    "preprintOnly",
    "relatedOnly",
    "localItems",
    "onlineItems",
    "nonReviewOnly",
)

QUICK_FILTER_EXCLUSIONS: Dict[str, tuple[str, ...]] = {
    "highCitations": (),
    "recent5Years": ("recent1Year",),
    "recent1Year": ("recent5Years",),
    "publishedOnly": ("preprintOnly",),
    "preprintOnly": ("publishedOnly",),
    "relatedOnly": (),
    "localItems": ("onlineItems",),
    "onlineItems": ("localItems",),
    "nonReviewOnly": (),
}


def citation_value(entry: Entry, *, exclude_self: bool = False) -> int:
    """Return the citation count used for display, sorting, and filtering."""
    if exclude_self and entry.citation_count_without_self is not None:
        return int(entry.citation_count_without_self)
    return int(entry.citation_count or 0)


def _date_key(entry: Entry) -> str:
    """Internal helper for date key."""
    if entry.earliest_date:
        return str(entry.earliest_date)
    if entry.year is not None:
        return f"{int(entry.year):04d}"
    return ""


def sort_entries(entries: Sequence[Entry], sort: Optional[str], *, exclude_self: bool = False) -> List[Entry]:
    """Return a sorted copy of ``entries``.

    ``default`` and unknown keys keep the original order. All sorts are stable.

    Args:
        entries (Sequence[Entry]): Entries to sort.
        sort (Optional[str]): Sort key.
        exclude_self (bool): Use self-citation-free counts.

    Returns:
        List[Entry]: Sorted entries.
    """
    items = list(entries)
    if sort in ("yearDesc", "mostrecent"):
        if sort == "mostrecent":
            items.sort(key=_date_key, reverse=True)
        else:
            items.sort(key=lambda e: e.year if e.year is not None else -1, reverse=True)
    elif sort in ("citationDesc", "mostcited"):
        items.sort(key=lambda e: citation_value(e, exclude_self=exclude_self), reverse=True)
    return items


def has_journal_info(entry: Entry) -> bool:
    info = entry.publication_info or {}
    return bool(info.get("journal_title") or info.get("journal_title_abbrev"))


def _matches_recent(entry: Entry, years: int, current_year: int) -> bool:
    """Internal helper for matches recent."""
    if entry.year is None:
        return False
    return int(entry.year) >= current_year - (max(1, years) - 1)


def _has_local_item(entry: Entry) -> bool:
    return entry.local_item_id is not None and entry.local_item_id != 0


def quick_filter_predicate(
    filter_type: str,
    *,
    current_year: Optional[int] = None,
    exclude_self: bool = False,
) -> Optional[Callable[[Entry], bool]]:
    """Return the predicate for a quick filter, or ``None`` for unknown names."""
    year = current_year or date.today().year
    predicates: Dict[str, Callable[[Entry], bool]] = {
        "highCitations": lambda e: citation_value(e, exclude_self=exclude_self) > HIGH_CITATIONS_THRESHOLD,
        "recent5Years": lambda e: _matches_recent(e, 5, year),
        "recent1Year": lambda e: _matches_recent(e, 1, year),
        "publishedOnly": has_journal_info,
        "preprintOnly": lambda e: bool(e.arxiv_id) and not has_journal_info(e),
        "relatedOnly": lambda e: e.is_related is True,
        "localItems": _has_local_item,
        "onlineItems": lambda e: not _has_local_item(e),
        "nonReviewOnly": lambda e: not is_review_entry(e),
    }
    return predicates.get(filter_type)


def toggle_quick_filter(active: Iterable[str], filter_type: str) -> Set[str]:
    """Toggle ``filter_type`` and drop filters it is mutually exclusive with."""
    if filter_type not in QUICK_FILTER_EXCLUSIONS:
        raise ValueError(f"unknown quick filter: {filter_type}")
    result = set(active)
    if filter_type in result:
        result.discard(filter_type)
        return result
    result.add(filter_type)
    for excluded in QUICK_FILTER_EXCLUSIONS[filter_type]:
        result.discard(excluded)
    return result


def searchable_text(entry: Entry) -> str:
    parts: List[str] = [entry.title or "", " ".join(entry.authors)]
    if entry.year is not None:
        parts.append(str(entry.year))
    if entry.arxiv_id:
        parts.append(entry.arxiv_id)
    info = entry.publication_info or {}
    for key in ("journal_title", "journal_title_abbrev"):
        if info.get(key):
            parts.append(str(info[key]))
    return " ".join(parts).lower()


def matches_text(entry: Entry, text: str) -> bool:
    """Every whitespace-separated token must appear in the entry's searchable text."""
    tokens = [tok for tok in re.split(r"\s+", (text or "").strip().lower()) if tok]
    if not tokens:
        return True
    haystack = searchable_text(entry)
    return all(tok in haystack for tok in tokens)


def filter_entries(
    entries: Sequence[Entry],
    *,
    quick_filters: Iterable[str] = (),
    text: str = "",
    current_year: Optional[int] = None,
    exclude_self: bool = False,
) -> List[Entry]:
    """Apply quick filters (AND) and the free-text filter."""
    predicates = []
    for name in quick_filters:
        predicate = quick_filter_predicate(name, current_year=current_year, exclude_self=exclude_self)
        if predicate is not None:
            predicates.append(predicate)
    out: List[Entry] = []
    for entry in entries:
        if not all(predicate(entry) for predicate in predicates):
            continue
        if not matches_text(entry, text):
            continue
        out.append(entry)
    return out


def h_index(citations: Iterable[int]) -> int:
    ranked = sorted((max(0, int(c)) for c in citations), reverse=True)
    h = 0
    for idx, value in enumerate(ranked, start=1):
        if value >= idx:
            h = idx
        else:
            break
    return h


def entry_statistics(entries: Sequence[Entry], *, exclude_self: bool = False) -> Dict[str, Any]:
    """Summarize an entry list.

    Args:
        entries (Sequence[Entry]): Entries to summarize.
        exclude_self (bool): Use self-citation-free counts.

    Returns:
        Dict[str, Any]: Counts, total citations, year histogram, and h-index.
    """
    citations = [citation_value(e, exclude_self=exclude_self) for e in entries]
    years = Counter(int(e.year) for e in entries if e.year is not None)
    return {
        "count": len(entries),
        "with_recid": sum(1 for e in entries if e.recid),
        "local_count": sum(1 for e in entries if _has_local_item(e)),
        "total_citations": sum(citations),
        "year_histogram": {year: years[year] for year in sorted(years)},
        "h_index": h_index(citations),
    }
