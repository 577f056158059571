"""Normalize provider results into Candidate records and merge duplicates."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Set

from . import config
from .models import (
    DESCRIPTIVE_FIELDS,
    SOURCE_BOTH,
    SOURCE_ENRICHMENT,
    SOURCE_STRUCTURED,
    Candidate,
    CanonicalPlace,
    Coordinate,
    PlaceDetails,
    PlaceHint,
    SourceLink,
)

logger = logging.getLogger(__name__)


class PlaceLookup(Protocol):
    def details(self, place_id: str) -> Optional[CanonicalPlace]:
        ...

    def find_place(self, text: str, center: Coordinate, radius_m: int) -> Optional[CanonicalPlace]:
        ...


def candidate_from_place(row: Dict[str, Any]) -> Optional[Candidate]:
    """Map a parsed structured-search row; rows without id, name or coordinates are dropped."""
    place_id = row.get("place_id")
    name = row.get("name")
    lat = row.get("lat")
    lng = row.get("lng")
    if not place_id or not name:
        return None
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return None
    location = Coordinate(float(lat), float(lng))
    if not location.is_valid():
        return None
    rating = row.get("rating")
    return Candidate(
        candidate_id=place_id,
        place_id=place_id,
        name=name,
        address=row.get("address") or "",
        location=location,
        types=list(row.get("types") or []),
        source_kind=SOURCE_STRUCTURED,
        rating=float(rating) if isinstance(rating, (int, float)) else None,
        reviews_count=row.get("user_rating_count"),
    )


def _hint_types(details: Optional[PlaceDetails]) -> List[str]:
    if details is None:
        return []
    out: List[str] = []
    for value in [details.primary_type] + list(details.types):
        if value and value not in out:
            out.append(value)
    return out


def candidate_from_resolution(place: CanonicalPlace, hint: PlaceHint) -> Candidate:
    details = hint.details
    candidate = Candidate(
        candidate_id=place.place_id,
        place_id=place.place_id,
        name=place.name,
        address=place.address or (details.address if details is not None else None) or "",
        location=place.location,
        types=list(place.types) or _hint_types(details),
        source_kind=SOURCE_ENRICHMENT,
        sources=list(hint.sources),
    )
    if details is not None:
        candidate.rating = details.rating
        candidate.reviews_count = details.reviews
        candidate.description = details.description
        candidate.featured_user_review = details.featured_user_review
        candidate.open_state = details.open_state
        candidate.hours_summary = details.hours_summary
        candidate.highlights = list(details.highlights)
        candidate.activities = list(details.activities)
        candidate.amenities = list(details.amenities)
    return candidate


def resolve_hint(
    hint: PlaceHint,
    lookup: PlaceLookup,
    center: Coordinate,
    radius_m: int = config.FIND_PLACE_BIAS_RADIUS_M,
) -> Optional[CanonicalPlace]:
    """Resolve a free-text hint to a canonical place, or None when nothing matches."""
    place = None
    if hint.place_id_hint:
        place = lookup.details(hint.place_id_hint)
    if place is None:
        place = lookup.find_place(hint.name, center, radius_m)
    return place


def _union_sources(first: List[SourceLink], second: List[SourceLink]) -> List[SourceLink]:
    out: List[SourceLink] = []
    seen: Set[str] = set()
    for link in list(first) + list(second):
        if link.url in seen:
            continue
        seen.add(link.url)
        out.append(link)
    return out[: config.MAX_MERGED_SOURCES]


def merge_candidates(existing: Candidate, incoming: Candidate) -> Candidate:
    """Merge two records for the same place id.

    Sources are unioned and capped, the richer descriptive detail set is kept
    (ties keep the existing one), ratings fill in when missing, and the source
    kind becomes "both" only when the two records came from different sources.
    """
    richer = incoming if incoming.detail_richness() > existing.detail_richness() else existing
    if existing.source_kind == incoming.source_kind:
        kind = existing.source_kind
    else:
        kind = SOURCE_BOTH
    merged = Candidate(
        candidate_id=existing.candidate_id,
        place_id=existing.place_id,
        name=existing.name,
        address=existing.address or incoming.address,
        location=existing.location,
        types=list(existing.types or incoming.types),
        source_kind=kind,
        detour_km=existing.detour_km,
        insert_after_stop_id=existing.insert_after_stop_id,
        insert_after_name=existing.insert_after_name,
        sources=_union_sources(existing.sources, incoming.sources),
        rating=existing.rating if existing.rating is not None else incoming.rating,
        reviews_count=(
            existing.reviews_count if existing.reviews_count is not None else incoming.reviews_count
        ),
    )
    for attr in DESCRIPTIVE_FIELDS:
        value = getattr(richer, attr)
        setattr(merged, attr, list(value) if isinstance(value, list) else value)
    return merged


class CandidateIndex:
    """Insertion-ordered candidates keyed by place id, never admitting excluded ids."""

    def __init__(self, excluded_place_ids: Iterable[str] = ()) -> None:
        self.excluded = {pid for pid in excluded_place_ids if pid}
        self._by_id: Dict[str, Candidate] = {}

    def add(self, candidate: Candidate) -> bool:
        if candidate.place_id in self.excluded:
            logger.debug("Skipping %s: already in the day", candidate.place_id)
            return False
        prev = self._by_id.get(candidate.candidate_id)
        if prev is None:
            self._by_id[candidate.candidate_id] = candidate
            return True
        self._by_id[candidate.candidate_id] = merge_candidates(prev, candidate)
        return False

    def extend(self, candidates: Iterable[Candidate]) -> int:
        return sum(1 for c in candidates if self.add(c))

    def get(self, candidate_id: str) -> Optional[Candidate]:
        return self._by_id.get(candidate_id)

    def values(self) -> List[Candidate]:
        return list(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(list(self._by_id.values()))
