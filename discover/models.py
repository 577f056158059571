"""Itinerary and Discover data model."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SOURCE_STRUCTURED = "structured"
SOURCE_ENRICHMENT = "enrichment"
SOURCE_BOTH = "both"

DESCRIPTIVE_FIELDS = (
    "description",
    "featured_user_review",
    "open_state",
    "hours_summary",
    "highlights",
    "activities",
    "amenities",
)


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def is_valid(self) -> bool:
        return (
            isinstance(self.lat, (int, float))
            and isinstance(self.lng, (int, float))
            and not isinstance(self.lat, bool)
            and not isinstance(self.lng, bool)
            and math.isfinite(self.lat)
            and math.isfinite(self.lng)
        )

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Coordinate"]:
        if not isinstance(data, dict):
            return None
        lat = _first(data, "lat", "latitude")
        lng = _first(data, "lng", "lon", "longitude")
        if lat is None or lng is None:
            return None
        try:
            return cls(float(lat), float(lng))
        except (TypeError, ValueError):
            return None


@dataclass
class Stop:
    id: str
    name: str
    notes: str = ""
    place_id: Optional[str] = None
    address: Optional[str] = None
    location: Optional[Coordinate] = None

    @property
    def is_location_stop(self) -> bool:
        return self.location is not None and self.location.is_valid()


@dataclass
class Day:
    id: str
    label: str
    destinations: List[Stop] = field(default_factory=list)


@dataclass
class Trip:
    id: str
    name: str
    created_at: str
    updated_at: str
    days: List[Day] = field(default_factory=list)


@dataclass(frozen=True)
class Anchor:
    stop_id: str
    location: Coordinate


def anchors_for_day(day: Day) -> List[Anchor]:
    return [
        Anchor(stop_id=stop.id, location=stop.location)
        for stop in day.destinations
        if stop.is_location_stop
    ]


@dataclass(frozen=True)
class SourceLink:
    title: str
    url: str
    snippet: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"title": self.title, "url": self.url}
        if self.snippet:
            out["snippet"] = self.snippet
        return out


@dataclass
class PlaceDetails:
    rating: Optional[float] = None
    reviews: Optional[int] = None
    primary_type: Optional[str] = None
    types: List[str] = field(default_factory=list)
    address: Optional[str] = None
    open_state: Optional[str] = None
    hours_summary: Optional[str] = None
    description: Optional[str] = None
    featured_user_review: Optional[str] = None
    highlights: List[str] = field(default_factory=list)
    activities: List[str] = field(default_factory=list)
    amenities: List[str] = field(default_factory=list)


@dataclass
class PlaceHint:
    """A free-text search result; the identifier is only a hint and must be validated."""

    name: str
    place_id_hint: Optional[str] = None
    sources: List[SourceLink] = field(default_factory=list)
    details: Optional[PlaceDetails] = None


@dataclass(frozen=True)
class CanonicalPlace:
    place_id: str
    name: str
    address: str
    location: Coordinate
    types: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    candidate_id: str
    place_id: str
    name: str
    address: str
    location: Coordinate
    types: List[str] = field(default_factory=list)
    source_kind: str = SOURCE_STRUCTURED
    detour_km: float = 0.0
    insert_after_stop_id: str = ""
    insert_after_name: str = ""
    sources: List[SourceLink] = field(default_factory=list)
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    description: Optional[str] = None
    featured_user_review: Optional[str] = None
    open_state: Optional[str] = None
    hours_summary: Optional[str] = None
    highlights: List[str] = field(default_factory=list)
    activities: List[str] = field(default_factory=list)
    amenities: List[str] = field(default_factory=list)

    def detail_richness(self) -> int:
        return sum(1 for name in DESCRIPTIVE_FIELDS if getattr(self, name) not in (None, "", []))


@dataclass
class Suggestion:
    candidate_id: str
    place_id: str
    name: str
    address: str
    location: Coordinate
    detour_km: float
    insert_after_stop_id: str
    why_it_fits: str
    placement_text: str
    source_kind: str
    sources: List[SourceLink] = field(default_factory=list)
    open_state: Optional[str] = None
    hours_summary: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "candidate_id": self.candidate_id,
            "place_id": self.place_id,
            "name": self.name,
            "address": self.address,
            "location": self.location.to_dict(),
            "detour_km": self.detour_km,
            "insert_after_stop_id": self.insert_after_stop_id,
            "why_it_fits": self.why_it_fits,
            "placement_text": self.placement_text,
            "sources": [s.to_dict() for s in self.sources],
            "source_kind": self.source_kind,
        }
        if self.open_state:
            record["open_state"] = self.open_state
        if self.hours_summary:
            record["hours_summary"] = self.hours_summary
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Suggestion":
        location = Coordinate.from_dict(record.get("location"))
        if location is None:
            raise ValueError("Suggestion record has no usable location")
        return cls(
            candidate_id=str(_first(record, "candidate_id", "candidateId") or ""),
            place_id=str(_first(record, "place_id", "placeId") or ""),
            name=str(record.get("name") or ""),
            address=str(record.get("address") or ""),
            location=location,
            detour_km=float(_first(record, "detour_km", "detourKm") or 0.0),
            insert_after_stop_id=str(
                _first(record, "insert_after_stop_id", "insertAfterDestinationId") or ""
            ),
            why_it_fits=str(_first(record, "why_it_fits", "whyItFits") or ""),
            placement_text=str(_first(record, "placement_text", "placementText") or ""),
            source_kind=str(_first(record, "source_kind", "sourceKind") or SOURCE_STRUCTURED),
            sources=[
                SourceLink(title=s.get("title", ""), url=s.get("url", ""), snippet=s.get("snippet"))
                for s in record.get("sources") or []
                if isinstance(s, dict)
            ],
            open_state=_first(record, "open_state", "openState"),
            hours_summary=_first(record, "hours_summary", "hoursSummary"),
        )


# Trip documents

def stop_from_dict(data: Dict[str, Any]) -> Stop:
    return Stop(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        notes=str(data.get("notes") or ""),
        place_id=_first(data, "place_id", "placeId"),
        address=data.get("address"),
        location=Coordinate.from_dict(data.get("location")),
    )


def stop_to_dict(stop: Stop) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": stop.id, "name": stop.name, "notes": stop.notes}
    if stop.place_id:
        out["placeId"] = stop.place_id
    if stop.address:
        out["address"] = stop.address
    if stop.location is not None:
        out["location"] = stop.location.to_dict()
    return out


def trip_from_dict(data: Dict[str, Any]) -> Trip:
    days = []
    for d in data.get("days") or []:
        days.append(
            Day(
                id=str(d["id"]),
                label=str(d.get("label") or ""),
                destinations=[stop_from_dict(s) for s in d.get("destinations") or []],
            )
        )
    return Trip(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        created_at=str(_first(data, "created_at", "createdAt") or ""),
        updated_at=str(_first(data, "updated_at", "updatedAt") or ""),
        days=days,
    )


def trip_to_dict(trip: Trip) -> Dict[str, Any]:
    return {
        "id": trip.id,
        "name": trip.name,
        "createdAt": trip.created_at,
        "updatedAt": trip.updated_at,
        "days": [
            {
                "id": day.id,
                "label": day.label,
                "destinations": [stop_to_dict(s) for s in day.destinations],
            }
            for day in trip.days
        ],
    }
