"""Lightweight structured logging for fetch, cache, and ranking events."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict


def log_event(event: str, payload: Dict[str, Any] | None = None) -> None:
    """Emit a structured JSON log line to stderr.

    Stdout is reserved for CLI output.

    Args:
        event (str): Event name.
        payload (Dict[str, Any] | None): Extra fields merged into the log line.
    """
    data = {
        "event": event,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    if payload:
        data.update(payload)
    print(json.dumps(data, ensure_ascii=False, default=str), file=sys.stderr)
