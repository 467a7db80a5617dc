"""Literature API client and normalization of API records into entries."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from refgraph.core.config import DEFAULT_API_BASE
from refgraph.core.errors import NotFoundError
from refgraph.core.models import Entry
from refgraph.integrations.inspire_schemas import parse_record_response, parse_search_response
from refgraph.pipeline.cancellation import CancellationToken
from refgraph.services.rate_limit import RateLimitedFetcher

AUTHOR_LIMIT = 10
LARGE_COLLABORATION_THRESHOLD = 20
PLACEHOLDER_TITLES = {"", "title unavailable", "no title"}
UNKNOWN_AUTHOR = "unknown author"

LIST_FIELDS = ",".join(
    [
        "control_number",
        "titles.title",
        "authors.full_name",
        "author_count",
        "collaborations",
        "earliest_date",
        "publication_info",
        "arxiv_eprints",
        "dois",
        "texkeys",
        "document_type",
        "citation_count",
        "citation_count_without_self_citations",
    ]
)
COUNT_FIELDS = "control_number"
REFERENCE_FIELDS = "metadata.references"
ABSTRACT_FIELDS = "metadata.abstracts"


# normalization


def extract_recid_from_ref(ref: Optional[str]) -> Optional[str]:
    """Return the trailing numeric recid of an API ``$ref`` URL."""
    if not ref:
        return None
    match = re.search(r"/(\d+)(?:\?.*)?$", str(ref))
    return match.group(1) if match else None


def extract_recid_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    match = re.search(r"(?:literature|record)/(\d+)", str(url))
    return match.group(1) if match else None


def extract_recid_from_urls(urls: Any) -> Optional[str]:
    if not isinstance(urls, list):
        return None
    for item in urls:
        value = item.get("value") if isinstance(item, dict) else None
        recid = extract_recid_from_url(value)
        if recid:
            return recid
    return None


def normalize_arxiv_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("value") or value.get("id")
    if not isinstance(value, str):
        return None
    text = re.sub(r"^arxiv:", "", value.strip(), flags=re.IGNORECASE)
    return text or None


def _arxiv_from_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    eprints = metadata.get("arxiv_eprints")
    if isinstance(eprints, list):
        for item in eprints:
            arxiv = normalize_arxiv_id(item)
            if arxiv:
                return arxiv
    return None


def _first_doi(value: Any) -> Optional[str]:
    if not isinstance(value, list) or not value:
        return None
    first = value[0]
    if isinstance(first, dict):
        first = first.get("value")
    return str(first) if first else None


def _first_str(value: Any) -> Optional[str]:
    if isinstance(value, list) and value and isinstance(value[0], str):
        return value[0]
    return None


def _year(value: Any) -> Optional[int]:
    """Return a four-digit year parsed from an int or a date-like string."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value if 1000 <= value <= 9999 else None
    if isinstance(value, str):
        match = re.match(r"\s*(\d{4})", value)
        if match:
            return int(match.group(1))
    return None


def split_publication_info(raw: Any) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split publication info into the primary record and erratum/addendum notes."""
    items = raw if isinstance(raw, list) else [raw]
    items = [item for item in items if isinstance(item, dict) and item]
    if not items:
        return None, []

    def _note_label(info: Dict[str, Any]) -> Optional[str]:
        values: List[str] = []
        for key in ("material", "note", "pubinfo_freetext", "additional_info"):
            value = info.get(key)
            if isinstance(value, str):
                values.append(value)
            elif isinstance(value, list):
                values.extend(str(v) for v in value if isinstance(v, str))
        for value in values:
            if re.search("erratum", value, re.IGNORECASE):
                return "Erratum"
            if re.search("addendum", value, re.IGNORECASE):
                return "Addendum"
        return None

    primary = next((info for info in items if _note_label(info) is None), items[0])
    errata = [
        {"label": _note_label(info), "info": info}
        for info in items
        if info is not primary and _note_label(info) is not None
    ]
    return primary, errata


def _names_from_author_list(authors: Any, limit: int) -> Tuple[List[str], int]:
    if not isinstance(authors, list) or not authors:
        return [], 0
    total = len(authors)
    effective = 1 if total > LARGE_COLLABORATION_THRESHOLD else limit
    names: List[str] = []
    for author in authors[: min(total, effective)]:
        if not isinstance(author, dict):
            continue
        name = author.get("full_name") or author.get("name")
        if not name and (author.get("last_name") or author.get("first_name")):
            name = ", ".join(part for part in (author.get("last_name"), author.get("first_name")) if part)
        if name:
            names.append(str(name))
    return names, total


def _collaboration_names(collaborations: Any, limit: int) -> Tuple[List[str], int]:
    if not isinstance(collaborations, list) or not collaborations:
        return [], 0
    names = []
    for item in collaborations[:limit]:
        value = item.get("value") if isinstance(item, dict) else item
        if value:
            names.append(str(value))
    return names, len(collaborations)


def _title_from(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict) and isinstance(value.get("title"), str):
        return value["title"].strip()
    if isinstance(value, list):
        for item in value:
            title = _title_from(item)
            if title:
                return title
    return ""


def build_reference_entry(wrapper: Dict[str, Any], index: int) -> Entry:
    """Build an entry from one item of a record's ``references`` list."""
    wrapper = wrapper if isinstance(wrapper, dict) else {}
    reference = wrapper.get("reference") if isinstance(wrapper.get("reference"), dict) else {}
    record = wrapper.get("record") if isinstance(wrapper.get("record"), dict) else {}
    recid = extract_recid_from_ref(record.get("$ref")) or extract_recid_from_urls(reference.get("urls"))
    names, total = _names_from_author_list(reference.get("authors"), AUTHOR_LIMIT)
    if not names:
        names, total = _collaboration_names(reference.get("collaborations"), AUTHOR_LIMIT)
    pub_raw = reference.get("publication_info")
    primary, _ = split_publication_info(pub_raw)
    year = None
    if isinstance(pub_raw, dict):
        year = _year(pub_raw.get("year")) or _year(pub_raw.get("date"))
    title = _title_from(reference.get("title")) or _title_from(reference.get("titles"))
    label = reference.get("label")
    return Entry(
        id=f"{index}-{recid or label or index}",
        recid=recid,
        title=title,
        year=year,
        authors=names,
        total_authors=total,
        citation_count=reference.get("citation_count") if isinstance(reference.get("citation_count"), int) else None,
        citation_count_without_self=(
            reference.get("citation_count_without_self_citations")
            if isinstance(reference.get("citation_count_without_self_citations"), int)
            else None
        ),
        publication_info=primary,
        arxiv_id=normalize_arxiv_id(reference.get("arxiv_eprint")),
        doi=_first_doi(reference.get("dois")),
        label=str(label) if label is not None else None,
        texkey=_first_str(reference.get("texkeys")),
    )


def build_entry_from_hit(hit: Dict[str, Any], index: int, *, prefix: str = "search") -> Entry:
    """Build an entry from a search hit or a bare metadata mapping."""
    metadata = hit.get("metadata") if isinstance(hit, dict) and isinstance(hit.get("metadata"), dict) else hit
    metadata = metadata if isinstance(metadata, dict) else {}
    recid = str(metadata.get("control_number") or "") or None
    names, total = _names_from_author_list(metadata.get("authors"), AUTHOR_LIMIT)
    if isinstance(metadata.get("author_count"), int):
        total = max(total, metadata["author_count"])
    if not names:
        names, total = _collaboration_names(metadata.get("collaborations"), AUTHOR_LIMIT)
    primary, _ = split_publication_info(metadata.get("publication_info"))
    year = _year(metadata.get("earliest_date"))
    if year is None and primary:
        year = _year(primary.get("year"))
    without_self = metadata.get("citation_count_without_self_citations")
    if not isinstance(without_self, int):
        without_self = metadata.get("citation_count_wo_self_citations")
    document_type = metadata.get("document_type")
    return Entry(
        id=f"{prefix}-{index}-{recid or index}",
        recid=recid,
        title=_title_from(metadata.get("titles")),
        year=year,
        authors=names,
        total_authors=total,
        citation_count=metadata.get("citation_count") if isinstance(metadata.get("citation_count"), int) else None,
        citation_count_without_self=without_self if isinstance(without_self, int) else None,
        publication_info=primary,
        arxiv_id=_arxiv_from_metadata(metadata),
        doi=_first_doi(metadata.get("dois")),
        document_type=[t for t in document_type if isinstance(t, str)] if isinstance(document_type, list) else [],
        earliest_date=metadata.get("earliest_date") if isinstance(metadata.get("earliest_date"), str) else None,
        texkey=_first_str(metadata.get("texkeys")),
    )


def is_placeholder_title(entry: Entry) -> bool:
    """Return whether the entry's title is missing or truncated."""
    title = (entry.title or "").strip()
    if title.lower() in PLACEHOLDER_TITLES:
        return True
    return entry.title.endswith((" ", "-"))


def has_unknown_authors(entry: Entry) -> bool:
    return not entry.authors or (len(entry.authors) == 1 and entry.authors[0].lower() == UNKNOWN_AUTHOR)


def needs_enrichment(entry: Entry) -> bool:
    """Return whether an entry with a recid still lacks display metadata."""
    if not entry.recid:
        return False
    return entry.citation_count is None or is_placeholder_title(entry) or has_unknown_authors(entry)


def is_metadata_complete(metadata: Optional[Dict[str, Any]]) -> bool:
    if not isinstance(metadata, dict):
        return False
    has_title = bool(_title_from(metadata.get("titles")))
    has_authors = bool(metadata.get("authors")) or bool(metadata.get("collaborations"))
    return has_title and has_authors and isinstance(metadata.get("citation_count"), int)


def apply_metadata(entry: Entry, metadata: Optional[Dict[str, Any]]) -> bool:
    """Fill missing or stale fields of ``entry`` from record metadata.

    Args:
        entry (Entry): Entry updated in place.
        metadata (Optional[Dict[str, Any]]): Record metadata.

    Returns:
        bool: Whether any field changed.
    """
    if not isinstance(metadata, dict):
        return False
    before = entry.to_dict()
    if isinstance(metadata.get("citation_count"), int):
        entry.citation_count = metadata["citation_count"]
    if isinstance(metadata.get("citation_count_without_self_citations"), int):
        entry.citation_count_without_self = metadata["citation_count_without_self_citations"]
    doc_type = metadata.get("document_type")
    if isinstance(doc_type, list) and doc_type:
        entry.document_type = [t for t in doc_type if isinstance(t, str) and t.strip()]
    if is_placeholder_title(entry):
        title = _title_from(metadata.get("titles"))
        if title:
            entry.title = title
    names, total = _names_from_author_list(metadata.get("authors"), AUTHOR_LIMIT)
    author_count = metadata.get("author_count") if isinstance(metadata.get("author_count"), int) else None
    if has_unknown_authors(entry) and names:
        entry.authors = names
        entry.total_authors = author_count if author_count is not None else total
    elif author_count is not None and author_count > entry.total_authors:
        entry.total_authors = author_count
    if entry.year is None:
        entry.year = _year(metadata.get("earliest_date"))
    if not entry.earliest_date and isinstance(metadata.get("earliest_date"), str):
        entry.earliest_date = metadata["earliest_date"]
    if not entry.arxiv_id:
        entry.arxiv_id = _arxiv_from_metadata(metadata)
    if not entry.doi:
        entry.doi = _first_doi(metadata.get("dois"))
    if not entry.texkey:
        entry.texkey = _first_str(metadata.get("texkeys"))
    primary, _ = split_publication_info(metadata.get("publication_info"))
    if primary:
        entry.publication_info = primary
        if entry.year is None:
            entry.year = _year(primary.get("year"))
    return entry.to_dict() != before


# client


@dataclass
class SearchPage:
    """One page of a paged search."""

    total: int
    hits: List[Dict[str, Any]] = field(default_factory=list)


class InspireClient:
    """Thin client over the literature API; every call goes through the shared fetcher."""

    def __init__(self, fetcher: RateLimitedFetcher, api_base: str = DEFAULT_API_BASE) -> None:
        self.fetcher = fetcher
        self.api_base = api_base.rstrip("/")

    def _literature_url(self, recid: Optional[str] = None) -> str:
        if recid:
            return f"{self.api_base}/literature/{recid}"
        return f"{self.api_base}/literature"

    def fetch_record(
        self,
        recid: str,
        *,
        fields: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Fetch one record's metadata.

        Raises:
            NotFoundError: If the record does not exist.
        """
        params = {"fields": fields} if fields else None
        response = self.fetcher.fetch(self._literature_url(recid), params, token=token)
        if response.not_found:
            raise NotFoundError(f"record {recid} not found")
        return parse_record_response(response.payload).metadata

    def search_page(
        self,
        query: str,
        *,
        page: int = 1,
        size: int = 250,
        sort: Optional[str] = None,
        fields: Optional[str] = LIST_FIELDS,
        token: Optional[CancellationToken] = None,
    ) -> SearchPage:
        """Fetch one page of a literature search.

        Raises:
            NotFoundError: If the remote answers 404.
            TransientNetworkError: On other failures or a malformed envelope.
        """
        params: Dict[str, Any] = {"q": query, "size": int(size), "page": int(page)}
        if sort:
            params["sort"] = sort
        if fields:
            params["fields"] = fields
        response = self.fetcher.fetch(self._literature_url(), params, token=token)
        if response.not_found:
            raise NotFoundError(f"search not found: {query}")
        envelope = parse_search_response(response.payload)
        return SearchPage(total=envelope.hits.total, hits=[hit.metadata for hit in envelope.hits.hits])

    def fetch_references(self, recid: str, *, token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        metadata = self.fetch_record(recid, fields=REFERENCE_FIELDS, token=token)
        references = metadata.get("references")
        return [item for item in references if isinstance(item, dict)] if isinstance(references, list) else []

    def _count(self, query: str, token: Optional[CancellationToken]) -> int:
        try:
            page = self.search_page(query, page=1, size=1, fields=COUNT_FIELDS, token=token)
        except NotFoundError:
            return 0
        return page.total

    def count_citing(self, recid: str, *, token: Optional[CancellationToken] = None) -> int:
        return self._count(f"refersto:recid:{recid}", token)

    def count_co_citing(self, seed_recid: str, candidate_recid: str, *, token: Optional[CancellationToken] = None) -> int:
        """Count papers citing both the seed and the candidate."""
        return self._count(f"refersto:recid:{seed_recid} AND refersto:recid:{candidate_recid}", token)

    def fetch_top_citing(
        self,
        recid: str,
        size: int,
        *,
        token: Optional[CancellationToken] = None,
    ) -> List[Dict[str, Any]]:
        """Return metadata of the most-cited papers citing ``recid``."""
        try:
            page = self.search_page(f"refersto:recid:{recid}", page=1, size=size, sort="mostcited", token=token)
        except NotFoundError:
            return []
        return page.hits

    def fetch_metadata_batch(
        self,
        recids: Iterable[str],
        *,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Fetch metadata for many records in one ``recid:a OR recid:b`` query."""
        unique = list(dict.fromkeys(str(r) for r in recids if r))
        if not unique:
            return {}
        query = " OR ".join(f"recid:{recid}" for recid in unique)
        try:
            page = self.search_page(query, page=1, size=len(unique), token=token)
        except NotFoundError:
            return {}
        out: Dict[str, Dict[str, Any]] = {}
        for metadata in page.hits:
            recid = str(metadata.get("control_number") or "")
            if recid:
                out[recid] = metadata
        return out

    def fetch_abstract(self, recid: str, *, token: Optional[CancellationToken] = None) -> Optional[str]:
        """Return the record's abstract, preferring the arXiv-sourced one."""
        metadata = self.fetch_record(recid, fields=ABSTRACT_FIELDS, token=token)
        abstracts = metadata.get("abstracts")
        if not isinstance(abstracts, list):
            return None
        values = [item for item in abstracts if isinstance(item, dict) and isinstance(item.get("value"), str)]
        if not values:
            return None
        preferred = next((item for item in values if str(item.get("source") or "").lower() == "arxiv"), values[0])
        return preferred["value"].strip() or None
