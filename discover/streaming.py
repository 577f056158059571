"""Incremental delivery of ranked suggestions.

Records are plain dicts, one per suggestion, ready to be written as one line
of NDJSON and flushed. The stream always ends: after `limit` unique records,
when the upstream is exhausted, or after a single terminal error record.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from .models import Suggestion

logger = logging.getLogger(__name__)

Fallback = Callable[[], List[Suggestion]]


def _close(iterator: Any) -> None:
    close = getattr(iterator, "close", None)
    if callable(close):
        close()


def stream_records(
    selections: Iterable[Suggestion],
    limit: int,
    fallback: Optional[Fallback] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield one record per unique candidate, at most `limit` of them.

    If the upstream fails or runs dry before producing anything, the fallback
    selection is streamed instead. A failure after the first record yields an
    {"error": ...} record and ends the stream. The upstream iterator is closed
    on every exit path, including the consumer closing this generator.
    """
    upstream = iter(selections)
    seen: Set[str] = set()
    failed: Optional[BaseException] = None
    try:
        while len(seen) < limit:
            try:
                suggestion = next(upstream)
            except StopIteration:
                break
            except Exception as exc:
                failed = exc
                break
            if suggestion.candidate_id in seen:
                continue
            seen.add(suggestion.candidate_id)
            yield suggestion.to_record()
    finally:
        _close(upstream)

    if failed is not None and seen:
        logger.warning("Suggestion stream failed after %s records: %s", len(seen), failed)
        yield {"error": str(failed) or type(failed).__name__}
        return

    if seen or fallback is None:
        if failed is not None:
            yield {"error": str(failed) or type(failed).__name__}
        return

    if failed is not None:
        logger.warning("Ranking stream failed before any selection (%s); using detour order", failed)
    else:
        logger.info("Ranking stream produced no usable selections; using detour order")
    try:
        for suggestion in fallback():
            if len(seen) >= limit:
                break
            if suggestion.candidate_id in seen:
                continue
            seen.add(suggestion.candidate_id)
            yield suggestion.to_record()
    except Exception as exc:
        logger.exception("Fallback selection failed")
        yield {"error": str(exc) or type(exc).__name__}


def collect_records(
    selections: Iterable[Suggestion],
    limit: int,
    fallback: Optional[Fallback] = None,
) -> List[Dict[str, Any]]:
    return list(stream_records(selections, limit, fallback=fallback))


def encode_ndjson(record: Dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"


def is_error_record(record: Dict[str, Any]) -> bool:
    return "error" in record and "candidate_id" not in record
