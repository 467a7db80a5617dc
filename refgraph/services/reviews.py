"""Review-article heuristics used by anchor selection, candidate filtering, and quick filters."""

from __future__ import annotations

import re
from typing import Any, Iterable, List

from refgraph.core.models import Entry

_PDG_RPP_TITLE_RE = re.compile(r"\breview of particle physics\b", re.IGNORECASE)
_REVIEW_DOC_TYPE_RE = re.compile(r"\breview\b", re.IGNORECASE)

REVIEW_JOURNAL_KEY_SUBSTRINGS = (
    "rmp",
    "revmodphys",
    "reviewsofmodernphysics",
    "physrep",
    "physrept",
    "physicsreports",
    "ppnp",
    "progpartnuclphys",
    "progressinparticleandnuclearphysics",
    "rpp",
    "repprogphys",
    "reptprogphys",
    "reportsonprogressinphysics",
)
ANNUAL_REVIEW_KEY_PREFIXES = ("annualreview", "annurev", "annrev")


def _journal_key(value: str) -> str:
    """Internal helper for journal key."""
    return re.sub(r"[^a-z0-9]+", "", value.lower()).strip()


def _journal_candidates(publication_info: Any) -> List[str]:
    """Internal helper for journal candidates."""
    items: Iterable[Any]
    if not publication_info:
        return []
    if isinstance(publication_info, list):
        items = publication_info
    else:
        items = [publication_info]
    titles: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        for key in ("journal_title", "journal_title_abbrev"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                titles.append(value)
    return titles


def is_pdg_review_title(title: Any) -> bool:
    """Return whether a title names the Review of Particle Physics."""
    return isinstance(title, str) and bool(_PDG_RPP_TITLE_RE.search(title))


def is_review_document_type(document_type: Any) -> bool:
    if not isinstance(document_type, list):
        return False
    return any(isinstance(t, str) and _REVIEW_DOC_TYPE_RE.search(t) for t in document_type)


def is_review_journal(publication_info: Any) -> bool:
    """Return whether any journal in ``publication_info`` is a known review venue."""
    for candidate in _journal_candidates(publication_info):
        key = _journal_key(candidate)
        if not key:
            continue
        if key.startswith(ANNUAL_REVIEW_KEY_PREFIXES):
            return True
        if any(part in key for part in REVIEW_JOURNAL_KEY_SUBSTRINGS):
            return True
    return False


def is_review_entry(entry: Entry) -> bool:
    return is_review_document_type(entry.document_type) or is_review_journal(entry.publication_info)
