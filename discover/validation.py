"""Spatial guardrail for resolved candidates.

Free-text hints are resolved to places by fuzzy text matching, which now and
then lands on a same-named place in another city. Anything farther than the
guardrail from every anchor is treated as a bad match and dropped.
"""
from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence, Tuple

from . import config
from .geo import min_distance_km_to_anchors
from .models import SOURCE_ENRICHMENT, Anchor, Candidate

logger = logging.getLogger(__name__)


def passes_guardrail(
    candidate: Candidate,
    anchors: Sequence[Anchor],
    max_km: Optional[float] = None,
) -> bool:
    limit = config.GUARDRAIL_MAX_KM if max_km is None else max_km
    dist = min_distance_km_to_anchors(anchors, candidate.location)
    return math.isfinite(dist) and dist <= limit


def validate_candidates(
    candidates: Iterable[Candidate],
    anchors: Sequence[Anchor],
    max_km: Optional[float] = None,
) -> Tuple[List[Candidate], List[Candidate]]:
    """Split candidates into (accepted, rejected).

    Structured-search results are radius-bounded by the search itself, so
    only enrichment-only candidates are checked.
    """
    accepted: List[Candidate] = []
    rejected: List[Candidate] = []
    for candidate in candidates:
        if candidate.source_kind == SOURCE_ENRICHMENT and not passes_guardrail(
            candidate, anchors, max_km
        ):
            logger.debug("Guardrail dropped %s (%s)", candidate.name, candidate.place_id)
            rejected.append(candidate)
            continue
        accepted.append(candidate)
    return accepted, rejected
