"""Primary CLI entrypoints for reference, citation, author, search, and related views plus cache maintenance."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from refgraph.core.errors import RefGraphError
from refgraph.core.settings import load_settings
from refgraph.pipeline.pagination import PageSnapshot
from refgraph.services.entry_filters import QUICK_FILTER_TYPES, SORT_OPTIONS, entry_statistics, filter_entries
from refgraph.services.references import LoadOutcome, ReferenceGraphService, build_service
from refgraph.services.related_papers import RelatedProgress


class _ProgressBar:
    """Adapt cumulative snapshots to a tqdm bar on stderr."""

    def __init__(self, desc: str, enabled: bool = True) -> None:
        self.desc = desc
        self.enabled = enabled
        self._bar: Optional[tqdm] = None

    def __call__(self, snapshot: Any) -> None:
        if not self.enabled:
            return
        if isinstance(snapshot, RelatedProgress):
            done, total = snapshot.processed_anchors, snapshot.total_anchors
        elif isinstance(snapshot, PageSnapshot):
            done, total = len(snapshot.entries), snapshot.total_hits
        else:
            return
        if self._bar is None:
            self._bar = tqdm(total=total, desc=self.desc, file=sys.stderr, leave=False)
        self._bar.total = total
        self._bar.n = done
        self._bar.refresh()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def _service(args: argparse.Namespace) -> ReferenceGraphService:
    settings = load_settings(Path(args.config) if getattr(args, "config", None) else None)
    return build_service(settings, schedule_purge=False)


def _outcome_payload(outcome: LoadOutcome, args: argparse.Namespace) -> Dict[str, Any]:
    """Internal helper for outcome payload."""
    entries = filter_entries(
        outcome.entries,
        quick_filters=args.filter or [],
        text=args.text or "",
        exclude_self=args.exclude_self,
    )
    if args.limit and args.limit > 0:
        entries = entries[: args.limit]
    payload: Dict[str, Any] = {
        "state": outcome.state,
        "mode": outcome.mode,
        "identifier": outcome.identifier,
        "sort": outcome.sort,
        "total": outcome.total,
        "shown": len(entries),
        "source": outcome.source,
        "complete": outcome.complete,
    }
    if outcome.error:
        payload["error"] = outcome.error
    if args.stats:
        payload["statistics"] = entry_statistics(outcome.entries, exclude_self=args.exclude_self)
    if outcome.ranked:
        scores = {item.entry.id: item for item in outcome.ranked}
        rows: List[Dict[str, Any]] = []
        for entry in entries:
            item = scores.get(entry.id)
            row = entry.to_dict()
            if item is not None:
                row["combined_score"] = item.combined_score
                row["coupling_score"] = item.coupling_score
                row["co_citation_score"] = item.co_citation_score
                row["shared_anchor_count"] = item.shared_anchor_count
            rows.append(row)
        payload["entries"] = rows
    else:
        payload["entries"] = [entry.to_dict() for entry in entries]
    if outcome.enrichment is not None:
        report = outcome.enrichment
        payload["enrichment"] = {
            "requested": report.requested,
            "from_cache": report.from_cache,
            "from_network": report.from_network,
            "local_matches": report.local_matches,
            "failures": [str(exc) for exc in report.failures],
            "cancelled": report.cancelled,
        }
    return payload


def _run_view(args: argparse.Namespace, mode: str, identifier: str) -> int:
    """Load one view and print it as JSON.

    Args:
        args (argparse.Namespace): Parsed CLI args.
        mode (str): View mode.
        identifier (str): Recid, author, or query.

    Returns:
        int: Process return code.
    """
    service = _service(args)
    progress = _ProgressBar(mode, enabled=not args.quiet)
    try:
        outcome = service.activate(mode, identifier, args.sort, on_progress=progress, enrich=not args.no_enrich)
    finally:
        progress.close()
        service.close()
    print(json.dumps(_outcome_payload(outcome, args), indent=2, ensure_ascii=False))
    if outcome.state == "ready":
        return 0
    return 2 if outcome.state == "not_found" else 1


def cmd_references(args: argparse.Namespace) -> int:
    return _run_view(args, "references", args.recid)


def cmd_cited_by(args: argparse.Namespace) -> int:
    return _run_view(args, "citedBy", args.recid)


def cmd_author(args: argparse.Namespace) -> int:
    return _run_view(args, "authorPapers", args.author)


def cmd_search(args: argparse.Namespace) -> int:
    return _run_view(args, "search", args.query)


def cmd_related(args: argparse.Namespace) -> int:
    return _run_view(args, "related", args.recid)


def cmd_cache_stats(args: argparse.Namespace) -> int:
    """Print persistent cache statistics."""
    service = _service(args)
    try:
        stats = service.cache_stats()
    finally:
        service.close()
    print(json.dumps(stats, indent=2, default=str))
    return 0


def cmd_cache_purge(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        removed = service.purge_cache()
    finally:
        service.close()
    print(f"Removed {removed} expired or unreadable cache files")
    return 0


def cmd_cache_clear(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        removed = service.clear_cache()
    finally:
        service.close()
    print(f"Removed {removed} cache files")
    return 0


def cmd_cache_check_dir(args: argparse.Namespace) -> int:
    """Check that a directory can hold the persistent cache.

    The check does not change configuration; set ``cache_dir`` or
    ``REFGRAPH_CACHE_DIR`` to use the directory.
    """
    service = _service(args)
    try:
        directory = service.set_cache_directory(Path(args.directory).expanduser())
    except RefGraphError as exc:
        print(f"Cache directory not usable: {exc}")
        return 1
    finally:
        service.close()
    print(f"Cache directory is usable: {directory}")
    return 0


def _add_view_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sort", type=str, choices=SORT_OPTIONS, default=None)
    parser.add_argument("--filter", action="append", choices=QUICK_FILTER_TYPES, default=[], help="Quick filter, repeatable")
    parser.add_argument("--text", type=str, default="", help="Free-text filter over title, authors, year, arXiv id, journal")
    parser.add_argument("--exclude-self", action="store_true", help="Use citation counts without self-citations")
    parser.add_argument("--limit", type=int, default=0)
    parser.add_argument("--stats", action="store_true", help="Include list statistics")
    parser.add_argument("--no-enrich", action="store_true")
    parser.add_argument("--quiet", action="store_true", help="Hide the progress bar")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        argparse.ArgumentParser: Configured argument parser.
    """
    p = argparse.ArgumentParser(prog="refgraph")
    p.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("references", help="List the references of a record")
    r.add_argument("recid", type=str)
    _add_view_arguments(r)
    r.set_defaults(func=cmd_references)

    c = sub.add_parser("cited-by", help="List records citing a record")
    c.add_argument("recid", type=str)
    _add_view_arguments(c)
    c.set_defaults(func=cmd_cited_by)

    a = sub.add_parser("author", help="List papers by an author")
    a.add_argument("author", type=str, help="Author name or BAI")
    _add_view_arguments(a)
    a.set_defaults(func=cmd_author)

    s = sub.add_parser("search", help="Run a literature search")
    s.add_argument("query", type=str)
    _add_view_arguments(s)
    s.set_defaults(func=cmd_search)

    rel = sub.add_parser("related", help="Rank papers related to a record")
    rel.add_argument("recid", type=str)
    _add_view_arguments(rel)
    rel.set_defaults(func=cmd_related)

    cache = sub.add_parser("cache", help="Persistent cache maintenance")
    cache_sub = cache.add_subparsers(dest="cache_cmd", required=True)
    cache_stats = cache_sub.add_parser("stats", help="Show cache statistics")
    cache_stats.set_defaults(func=cmd_cache_stats)
    cache_purge = cache_sub.add_parser("purge", help="Remove expired and unreadable files")
    cache_purge.set_defaults(func=cmd_cache_purge)
    cache_clear = cache_sub.add_parser("clear", help="Remove every cache file")
    cache_clear.set_defaults(func=cmd_cache_clear)
    cache_dir = cache_sub.add_parser("check-dir", help="Check that a directory can hold the cache")
    cache_dir.add_argument("directory", type=str)
    cache_dir.set_defaults(func=cmd_cache_check_dir)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for refgraph.

    Returns:
        int: Process return code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
