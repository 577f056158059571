"""Places API (New) client: nearby search, place details, text find-place."""
from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from . import config
from .cache import make_request_cache_key
from .errors import MisconfiguredKeyError
from .http import HttpClient, RequestBudget, RequestMetrics, redact, response_error_text
from .models import CanonicalPlace, Coordinate

logger = logging.getLogger(__name__)

_REFERRER_PATTERNS = (
    re.compile(r"referer restrictions cannot be used with this api", re.IGNORECASE),
    re.compile(r"requests from referer .* are blocked", re.IGNORECASE),
    re.compile(r"API_KEY_HTTP_REFERRER_BLOCKED", re.IGNORECASE),
)
_INVALID_KEY_PATTERNS = (
    re.compile(r"api key not valid", re.IGNORECASE),
    re.compile(r"API_KEY_INVALID", re.IGNORECASE),
)
_SERVICE_DISABLED_PATTERNS = (
    re.compile(r"has not been used in project .* or it is disabled", re.IGNORECASE),
    re.compile(r"SERVICE_DISABLED", re.IGNORECASE),
    re.compile(r"API_KEY_SERVICE_BLOCKED", re.IGNORECASE),
)

REFERRER_KEY_MESSAGE = (
    "Misconfigured Google Maps key. The server Places API cannot use a referrer-restricted key.\n"
    "Create a separate server key with Application restrictions = None and "
    "API restrictions = Places API, then set GOOGLE_MAPS_API_KEY."
)
INVALID_KEY_MESSAGE = (
    "Misconfigured Google Maps key. GOOGLE_MAPS_API_KEY was rejected as invalid; "
    "check the value set on the server."
)
SERVICE_DISABLED_MESSAGE = (
    "Misconfigured Google Maps key. Places API (New) is not enabled for this key's project, "
    "or the key's API restrictions exclude it. Enable Places API (New) and allow it on the key."
)


def misconfiguration_message(error_text: str) -> Optional[str]:
    """Return an operator-facing message when the error is a credential misconfiguration."""
    if any(p.search(error_text) for p in _REFERRER_PATTERNS):
        return REFERRER_KEY_MESSAGE
    if any(p.search(error_text) for p in _INVALID_KEY_PATTERNS):
        return INVALID_KEY_MESSAGE
    if any(p.search(error_text) for p in _SERVICE_DISABLED_PATTERNS):
        return SERVICE_DISABLED_MESSAGE
    return None


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        budget: Optional[RequestBudget] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.budget = budget
        self.metrics = metrics
        self._memory_cache: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def for_invocation(
        self, budget: Optional[RequestBudget], metrics: Optional[RequestMetrics]
    ) -> "PlacesClient":
        """Return a client sharing this HTTP session with its own budget and dedup map."""
        return PlacesClient(self.http, budget=budget, metrics=metrics)

    def search_nearby(self, center: Coordinate, radius_m: int, category: str) -> List[Dict[str, Any]]:
        body = build_nearby_search_body(center, radius_m, category)
        response = self._post(config.PLACES_NEARBY_SEARCH_URL, body, config.PLACES_NEARBY_FIELD_MASK)
        return parse_places_response(response)

    def details(self, place_id: str) -> Optional[CanonicalPlace]:
        place_id = (place_id or "").strip()
        if not place_id:
            return None
        url = config.PLACES_DETAILS_URL_TEMPLATE.format(place_id=quote(place_id, safe=""))
        params = {"languageCode": config.PLACES_LANGUAGE_CODE}
        try:
            response = self._get(url, params, config.PLACES_DETAILS_FIELD_MASK, lookup=True)
        except _NotFound:
            return None
        return parse_canonical_place(response)

    def find_place(self, text: str, center: Coordinate, radius_m: int) -> Optional[CanonicalPlace]:
        text = (text or "").strip()
        if not text:
            return None
        body = build_find_place_body(text, center, radius_m)
        try:
            response = self._post(
                config.PLACES_TEXT_SEARCH_URL, body, config.PLACES_TEXT_FIELD_MASK, lookup=True
            )
        except _NotFound:
            return None
        places = response.get("places") or []
        if not places:
            logger.debug("No place found for text %r", text)
            return None
        return parse_canonical_place(places[0])

    def _post(
        self, url: str, body: Dict[str, Any], field_mask: str, lookup: bool = False
    ) -> Dict[str, Any]:
        key = make_request_cache_key(url, {"body": body, "mask": field_mask})
        cached = self._cached(key)
        if cached is not None:
            return cached
        if self.budget is not None:
            self.budget.consume("places")
        elif self.metrics is not None:
            self.metrics.inc_network("places")
        try:
            response = self.http.post_json(url, body, field_mask)
        except requests.HTTPError as exc:
            raise self._translate(exc, lookup) from exc
        self._remember(key, response)
        return response

    def _get(
        self, url: str, params: Dict[str, Any], field_mask: str, lookup: bool = False
    ) -> Dict[str, Any]:
        key = make_request_cache_key(url, {"params": params, "mask": field_mask})
        cached = self._cached(key)
        if cached is not None:
            return cached
        if self.budget is not None:
            self.budget.consume("places")
        elif self.metrics is not None:
            self.metrics.inc_network("places")
        try:
            response = self.http.get_json(url, params=params, field_mask=field_mask)
        except requests.HTTPError as exc:
            raise self._translate(exc, lookup) from exc
        self._remember(key, response)
        return response

    def _cached(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cached = self._memory_cache.get(key)
        if cached is not None and self.metrics is not None:
            self.metrics.inc_dedup_skip("places")
        return cached

    def _remember(self, key: str, response: Dict[str, Any]) -> None:
        with self._lock:
            self._memory_cache[key] = response

    def _translate(self, exc: requests.HTTPError, lookup: bool) -> Exception:
        text = redact(response_error_text(exc), self.http.api_key)
        message = misconfiguration_message(text)
        if message:
            return MisconfiguredKeyError(message)
        status = exc.response.status_code if exc.response is not None else None
        if lookup and status in (400, 404):
            return _NotFound(text)
        return requests.HTTPError(f"Places request failed ({status}): {text}", response=exc.response)


class _NotFound(Exception):
    pass


def build_nearby_search_body(center: Coordinate, radius_m: int, category: str) -> Dict[str, Any]:
    return {
        "includedTypes": [category],
        "maxResultCount": config.NEARBY_MAX_RESULTS,
        "languageCode": config.PLACES_LANGUAGE_CODE,
        "locationRestriction": {
            "circle": {
                "center": {"latitude": center.lat, "longitude": center.lng},
                "radius": float(radius_m),
            }
        },
    }


def build_find_place_body(text: str, center: Coordinate, radius_m: int) -> Dict[str, Any]:
    return {
        "textQuery": text,
        "pageSize": 1,
        "languageCode": config.PLACES_LANGUAGE_CODE,
        "locationBias": {
            "circle": {
                "center": {"latitude": center.lat, "longitude": center.lng},
                "radius": float(radius_m),
            }
        },
    }


# Adapter/mapper for Places response fields

def _display_name(p: Dict[str, Any]) -> Optional[str]:
    display = p.get("displayName")
    if isinstance(display, dict):
        return display.get("text") or display.get("value")
    return display or p.get("name")


def _lat_lng(p: Dict[str, Any]) -> tuple:
    location = p.get("location") or p.get("latLng") or (p.get("geometry") or {}).get("location") or {}
    lat = location.get("latitude", location.get("lat"))
    lng = location.get("longitude", location.get("lng", location.get("lon")))
    return lat, lng


def _optional_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_places_response(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    places = response.get("places") or []
    parsed: List[Dict[str, Any]] = []
    for p in places:
        place_id = p.get("id") or p.get("placeId") or p.get("place_id")
        if not place_id:
            continue
        lat, lng = _lat_lng(p)
        rating = p.get("rating")
        user_rating_count = _optional_count(p.get("userRatingCount") or p.get("user_ratings_total"))
        parsed.append(
            {
                "place_id": place_id,
                "name": _display_name(p),
                "address": p.get("shortFormattedAddress") or p.get("formattedAddress") or "",
                "lat": lat,
                "lng": lng,
                "types": p.get("types") or [],
                "rating": rating,
                "user_rating_count": user_rating_count,
            }
        )
    return parsed


def parse_canonical_place(p: Dict[str, Any]) -> Optional[CanonicalPlace]:
    if not isinstance(p, dict):
        return None
    place_id = p.get("id") or p.get("placeId") or p.get("place_id")
    name = _display_name(p)
    lat, lng = _lat_lng(p)
    if not place_id or not name or not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return None
    location = Coordinate(float(lat), float(lng))
    if not location.is_valid():
        return None
    return CanonicalPlace(
        place_id=place_id,
        name=name,
        address=p.get("formattedAddress") or p.get("formatted_address") or "",
        location=location,
        types=list(p.get("types") or []),
    )
