"""Free-text place discovery through SerpAPI's Google Maps engine.

Only one search is issued per Discover invocation to respect low monthly
quotas; responses are cached for a few hours by query, center and zoom.
"""
from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode, urlparse

import requests

from . import config
from .cache import NullCache, ResponseCache, make_request_cache_key
from .errors import EnrichmentError, EnrichmentQuotaError
from .http import HttpClient, RequestBudget, RequestMetrics, redact, response_error_text
from .models import Coordinate, PlaceDetails, PlaceHint, SourceLink

logger = logging.getLogger(__name__)

_QUOTA_WORDS = ("exceeded", "quota", "credit", "monthly", "payment required")


def is_quota_error_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(word in lowered for word in _QUOTA_WORDS)


class EnrichmentClient:
    def __init__(
        self,
        api_key: str,
        http_client: Optional[HttpClient] = None,
        cache: Optional[ResponseCache] = None,
        budget: Optional[RequestBudget] = None,
        metrics: Optional[RequestMetrics] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.api_key = api_key
        # Retries would spend extra quota, so the provider gets a single attempt.
        self.http = http_client or HttpClient(
            api_key=None,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=1,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
        )
        self.cache = cache if cache is not None else NullCache()
        self.budget = budget
        self.metrics = metrics
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_env(cls, **kwargs: Any) -> Optional["EnrichmentClient"]:
        api_key = (os.environ.get("SERPAPI_API_KEY") or "").strip()
        if not api_key:
            return None
        return cls(api_key=api_key, **kwargs)

    def for_invocation(
        self, budget: Optional[RequestBudget], metrics: Optional[RequestMetrics]
    ) -> "EnrichmentClient":
        return EnrichmentClient(
            api_key=self.api_key,
            http_client=self.http,
            cache=self.cache,
            budget=budget,
            metrics=metrics,
            ttl_seconds=self.ttl_seconds,
        )

    def search(
        self,
        query: str,
        center: Optional[Coordinate] = None,
        zoom: Optional[int] = None,
    ) -> List[PlaceHint]:
        zoom = zoom if zoom is not None else config.ENRICHMENT_ZOOM
        params = build_search_params(query, center, zoom)
        key = make_request_cache_key(config.SERPAPI_SEARCH_URL, params)
        cached = self.cache.get(key)
        if cached is not None:
            if self.metrics is not None:
                self.metrics.inc_cache_hit("enrichment")
            return parse_hints(cached)

        if self.budget is not None:
            self.budget.consume("enrichment")
        elif self.metrics is not None:
            self.metrics.inc_network("enrichment")

        data = self._fetch(params)
        error = data.get("error")
        if error:
            message = redact(str(error), self.api_key)
            if is_quota_error_message(message):
                raise EnrichmentQuotaError(message)
            raise EnrichmentError(message)

        ttl = self.ttl_seconds if self.ttl_seconds is not None else config.ENRICHMENT_CACHE_TTL_SECONDS
        self.cache.set(key, data, ttl)
        return parse_hints(data)

    def _fetch(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request_params = dict(params)
        request_params["api_key"] = self.api_key
        try:
            return self.http.get_json(config.SERPAPI_SEARCH_URL, params=request_params)
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            message = redact(response_error_text(exc), self.api_key) or f"SerpAPI request failed ({status})"
            if status in (402, 429) or is_quota_error_message(message):
                raise EnrichmentQuotaError(message) from exc
            raise EnrichmentError(message) from exc
        except requests.RequestException as exc:
            raise EnrichmentError(redact(str(exc), self.api_key)) from exc


def build_search_params(query: str, center: Optional[Coordinate], zoom: int) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "engine": config.SERPAPI_ENGINE,
        "q": query,
        "hl": config.SERPAPI_LANGUAGE,
        "gl": config.SERPAPI_COUNTRY,
    }
    if center is not None:
        params["ll"] = f"@{center.lat:.4f},{center.lng:.4f},{zoom}z"
    return params


# Adapter/mapper for SerpAPI response fields

def normalize_name(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def trim_one_line(text: str, max_chars: int) -> str:
    flat = normalize_name(text)
    if len(flat) <= max_chars:
        return flat
    return flat[: max(0, max_chars - 1)].strip() + "…"


def safe_source_link(title: Optional[str], url: Optional[str], snippet: Optional[str] = None) -> Optional[SourceLink]:
    title = (title or "").strip()
    url = (url or "").strip()
    if not title or not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return SourceLink(title=title, url=url, snippet=(snippet or "").strip() or None)


def google_maps_place_url(name: str, place_id: str) -> str:
    query = urlencode({"api": "1", "query": name, "query_place_id": place_id})
    return f"https://www.google.com/maps/search/?{query}"


def _dedupe_strings(values: Iterable[Any], cap: int) -> List[str]:
    out: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        item = value.strip()
        if item and item not in out:
            out.append(item)
    return out[:cap]


def parse_extensions(extensions: Any) -> Dict[str, List[str]]:
    collected: Dict[str, List[str]] = {"highlights": [], "activities": [], "amenities": []}
    for obj in extensions or []:
        if not isinstance(obj, dict):
            continue
        for key, values in obj.items():
            if key in collected and isinstance(values, list):
                collected[key].extend(values)
    return {k: _dedupe_strings(v, config.HINT_MAX_EXTENSION_ITEMS) for k, v in collected.items()}


def _optional_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _hint_from_raw(raw: Dict[str, Any]) -> Optional[PlaceHint]:
    name = normalize_name(raw.get("title") or "")
    if not name:
        return None
    place_id = _optional_text(raw.get("place_id"))

    sources: List[SourceLink] = []
    website = safe_source_link(f"{name} website", raw.get("website"))
    if website:
        sources.append(website)
    if place_id:
        maps = safe_source_link("Google Maps", google_maps_place_url(name, place_id))
        if maps:
            sources.append(maps)
    link = safe_source_link(name, raw.get("link"), raw.get("snippet"))
    if link:
        sources.append(link)
    lookup = safe_source_link("SerpAPI place lookup", raw.get("place_id_search"))
    if lookup:
        sources.append(lookup)

    ext = parse_extensions(raw.get("extensions"))
    description = _optional_text(raw.get("description"))
    review = _optional_text(raw.get("user_review"))
    rating = raw.get("rating")
    reviews = raw.get("reviews")
    details = PlaceDetails(
        rating=float(rating) if isinstance(rating, (int, float)) else None,
        reviews=int(reviews) if isinstance(reviews, (int, float)) else None,
        primary_type=_optional_text(raw.get("type")),
        types=_dedupe_strings(raw.get("types") or [], config.HINT_MAX_TYPES),
        address=_optional_text(raw.get("address")),
        open_state=_optional_text(raw.get("open_state")),
        hours_summary=_optional_text(raw.get("hours")),
        description=trim_one_line(description, config.HINT_TEXT_MAX_CHARS) if description else None,
        featured_user_review=(
            trim_one_line(review.strip('"'), config.HINT_TEXT_MAX_CHARS) if review else None
        ),
        highlights=ext["highlights"],
        activities=ext["activities"],
        amenities=ext["amenities"],
    )
    return PlaceHint(
        name=name,
        place_id_hint=place_id,
        sources=sources[: config.HINT_MAX_SOURCES],
        details=details,
    )


def parse_hints(data: Dict[str, Any]) -> List[PlaceHint]:
    hints: List[PlaceHint] = []
    for section in ("local_results", "top_sights"):
        raw_items = data.get(section) or []
        if isinstance(raw_items, dict):
            raw_items = raw_items.get("sights") or []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            hint = _hint_from_raw(raw)
            if hint is not None:
                hints.append(hint)

    # The same place can repeat across sections.
    by_name: Dict[str, PlaceHint] = {}
    for hint in hints:
        key = hint.name.lower()
        prev = by_name.get(key)
        if prev is None:
            by_name[key] = hint
            continue
        by_name[key] = PlaceHint(
            name=prev.name,
            place_id_hint=prev.place_id_hint or hint.place_id_hint,
            sources=(prev.sources + hint.sources)[: config.HINT_MAX_SOURCES],
            details=prev.details or hint.details,
        )
    return list(by_name.values())
