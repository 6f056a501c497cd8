from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog

from endpoint_checks.history import DEFAULT_MAX_ENTRIES, HistoryBook


logger = structlog.get_logger(__name__)

STATE_VERSION = 1


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


def load_history(
    path: Path | str,
    *,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    retention: timedelta | None = None,
) -> HistoryBook:
    """
    Read the persisted history. A missing or unreadable file yields an empty
    book; individual bad samples are skipped.
    """
    path = Path(path)
    if not path.exists():
        return HistoryBook(max_entries=max_entries, retention=retention)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("History file unreadable, starting empty", path=str(path), error=str(exc))
        return HistoryBook(max_entries=max_entries, retention=retention)

    endpoints = raw.get("endpoints") if isinstance(raw, dict) else None
    book = HistoryBook.from_json(endpoints, max_entries=max_entries, retention=retention)
    logger.debug("History loaded", path=str(path), endpoints=len(book))
    return book


def save_history(path: Path | str, book: HistoryBook, *, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    removed = book.prune_expired(now=now)
    payload = {
        "version": STATE_VERSION,
        "updated_at": now.isoformat(),
        "endpoints": book.to_json(),
    }
    write_json_atomic(Path(path), payload)
    logger.debug("History saved", path=str(path), endpoints=len(book), pruned=removed)
