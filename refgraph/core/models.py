"""Normalized bibliographic entries and ranked related-paper candidates."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional


@dataclass
class Entry:
    """Normalized bibliographic record owned by one result set.

    Attributes:
        id: Identifier unique within the result set.
        recid: Remote record identifier, when the record resolves.
        title: Display title.
        year: Publication year, when known.
        authors: Leading author names in order.
        total_authors: Total author count, including those not listed.
        citation_count: Citations in the remote database.
        citation_count_without_self: Citations excluding self-citations.
        publication_info: Primary venue/volume/pages mapping.
        arxiv_id: arXiv identifier, when present.
        local_item_id: Opaque reference into the host library.
        is_related: Whether the local item is related to the current item.
        abstract: Lazily fetched abstract text.
    """

    id: str
    recid: Optional[str] = None
    title: str = ""
    year: Optional[int] = None
    authors: List[str] = field(default_factory=list)
    total_authors: int = 0
    citation_count: Optional[int] = None
    citation_count_without_self: Optional[int] = None
    publication_info: Optional[Dict[str, Any]] = None
    arxiv_id: Optional[str] = None
    doi: Optional[str] = None
    document_type: List[str] = field(default_factory=list)
    earliest_date: Optional[str] = None
    label: Optional[str] = None
    texkey: Optional[str] = None
    local_item_id: Optional[Any] = None
    is_related: bool = False
    abstract: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        known = {f.name for f in fields(cls)}
        payload = {key: value for key, value in data.items() if key in known}
        payload["authors"] = list(payload.get("authors") or [])
        payload["document_type"] = list(payload.get("document_type") or [])
        return cls(**payload)

    def citation_score(self) -> Optional[int]:
        """Citation count preferring the self-citation-free value."""
        raw = self.citation_count_without_self
        if raw is None:
            raw = self.citation_count
        if raw is None or raw < 0:
            return None
        return int(raw)


@dataclass
class RankedCandidate:
    """A related-paper candidate with its component and combined scores."""

    entry: Entry
    coupling_score: float
    combined_score: float
    co_citation_score: Optional[float] = None
    co_citation_count: Optional[int] = None
    shared_anchor_count: int = 0
    shared_anchor_titles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entry"] = self.entry.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RankedCandidate":
        return cls(
            entry=Entry.from_dict(data.get("entry") or {}),
            coupling_score=float(data.get("coupling_score") or 0.0),
            combined_score=float(data.get("combined_score") or 0.0),
            co_citation_score=data.get("co_citation_score"),
            co_citation_count=data.get("co_citation_count"),
            shared_anchor_count=int(data.get("shared_anchor_count") or 0),
            shared_anchor_titles=list(data.get("shared_anchor_titles") or []),
        )
