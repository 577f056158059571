"""Minimal-detour insertion point search along an ordered route."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from .geo import distance_km
from .models import Anchor, Candidate, Coordinate, Stop


@dataclass(frozen=True)
class InsertionPoint:
    insert_after_stop_id: str
    detour_km: float


def best_insertion_point(anchors: Sequence[Anchor], candidate_location: Coordinate) -> InsertionPoint:
    """Return the anchor after which visiting the candidate adds the least distance.

    With one anchor the detour is the straight distance to it. With more, each
    adjacent pair (a, b) costs d(a, c) + d(c, b) - d(a, b); the first strict
    minimum in route order wins.
    """
    if not anchors:
        raise ValueError("No anchors available")

    if len(anchors) == 1:
        only = anchors[0]
        return InsertionPoint(only.stop_id, distance_km(only.location, candidate_location))

    best_id = anchors[0].stop_id
    best_delta = math.inf
    for a, b in zip(anchors, anchors[1:]):
        delta = (
            distance_km(a.location, candidate_location)
            + distance_km(candidate_location, b.location)
            - distance_km(a.location, b.location)
        )
        if delta < best_delta:
            best_id = a.stop_id
            best_delta = delta
    return InsertionPoint(best_id, best_delta)


def annotate_candidates(
    candidates: Iterable[Candidate],
    anchors: Sequence[Anchor],
    stops: Iterable[Stop],
) -> List[Candidate]:
    names: Dict[str, str] = {s.id: s.name for s in stops}
    annotated = []
    for candidate in candidates:
        point = best_insertion_point(anchors, candidate.location)
        candidate.insert_after_stop_id = point.insert_after_stop_id
        candidate.detour_km = point.detour_km
        candidate.insert_after_name = names.get(point.insert_after_stop_id) or "a stop"
        annotated.append(candidate)
    return annotated
