"""Pydantic envelopes for literature API responses."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from refgraph.core.errors import TransientNetworkError


class LiteratureHit(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LiteratureHits(BaseModel):
    model_config = ConfigDict(extra="allow")

    total: int = Field(default=0, ge=0)
    hits: List[LiteratureHit] = Field(default_factory=list)


class LiteratureSearchResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    hits: LiteratureHits


class LiteratureRecordResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def parse_search_response(payload: Any) -> LiteratureSearchResponse:
    """Validate a paged search envelope.

    Raises:
        TransientNetworkError: If the envelope is malformed.
    """
    try:
        return LiteratureSearchResponse.model_validate(payload)
    except ValidationError as exc:
        raise TransientNetworkError(f"malformed search response: {exc.error_count()} errors") from exc


def parse_record_response(payload: Any) -> LiteratureRecordResponse:
    try:
        return LiteratureRecordResponse.model_validate(payload)
    except ValidationError as exc:
        raise TransientNetworkError(f"malformed record response: {exc.error_count()} errors") from exc
