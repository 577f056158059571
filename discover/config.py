"""Project configuration.

Keeps provider request shapes and Discover tunables centralized here. A
discover_config.json at the repo root may override a subset of the tunables.
Credentials are read from the environment only.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_NEARBY_SEARCH_URL = "https://places.googleapis.com/v1/places:searchNearby"
PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
PLACES_DETAILS_URL_TEMPLATE = "https://places.googleapis.com/v1/places/{place_id}"
SERPAPI_SEARCH_URL = "https://serpapi.com/search.json"

# --- Field masks ---

PLACES_NEARBY_FIELD_MASK = (
    "places.id,places.displayName,places.formattedAddress,places.shortFormattedAddress,"
    "places.location,places.types,places.rating,places.userRatingCount"
)
PLACES_TEXT_FIELD_MASK = (
    "places.id,places.displayName,places.formattedAddress,places.location,places.types"
)
PLACES_DETAILS_FIELD_MASK = "id,displayName,formattedAddress,location,types"

# --- Structured search ---

STRUCTURED_CATEGORIES: List[str] = ["tourist_attraction", "restaurant", "cafe"]
SEARCH_RADIUS_M = 10_000
NEARBY_MAX_RESULTS = 20
PLACES_LANGUAGE_CODE = "en"

# --- Enrichment (free-text search) ---

ENRICHMENT_QUERY_TEMPLATE = "hidden gems near {area}"
ENRICHMENT_QUERY_FALLBACK = "hidden gems near me"
ENRICHMENT_ZOOM = 12
ENRICHMENT_MAX_SEARCHES = 1
ENRICHMENT_MAX_RESOLUTIONS = 12
ENRICHMENT_CACHE_TTL_SECONDS = 12 * 60 * 60
FIND_PLACE_BIAS_RADIUS_M = 50_000
SERPAPI_ENGINE = "google_maps"
SERPAPI_LANGUAGE = "en"
SERPAPI_COUNTRY = "us"
HINT_MAX_SOURCES = 3
HINT_MAX_TYPES = 8
HINT_MAX_EXTENSION_ITEMS = 6
HINT_TEXT_MAX_CHARS = 220

# --- Guardrails and caps ---

GUARDRAIL_MAX_KM = 50.0
MAX_CANDIDATES = 80
MAX_MERGED_SOURCES = 4
PLACES_REQUESTS_PER_INVOCATION = 64

# --- Ranking ---

DEFAULT_LIMIT = 6
MIN_LIMIT = 1
MAX_LIMIT = 20
RANKING_MAX_CANDIDATES = 60
RANKING_MAX_ITINERARY_LINES = 40
RANKING_NOTE_MAX_CHARS = 120
RANKING_WHY_MAX_CHARS = 400
RANKING_REQUESTS_PER_INVOCATION = 1

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0
STRUCTURED_SEARCH_WORKERS = 4

# --- Cache ---

CACHE_DB_PATH = "discover_cache.db"

# Keys that discover_config.json may override, with their coercion.
_OVERRIDABLE: Dict[str, Any] = {
    "categories": ("STRUCTURED_CATEGORIES", list),
    "search_radius_m": ("SEARCH_RADIUS_M", int),
    "guardrail_max_km": ("GUARDRAIL_MAX_KM", float),
    "max_resolutions": ("ENRICHMENT_MAX_RESOLUTIONS", int),
    "max_candidates": ("MAX_CANDIDATES", int),
    "default_limit": ("DEFAULT_LIMIT", int),
    "enrichment_query_template": ("ENRICHMENT_QUERY_TEMPLATE", str),
    "enrichment_zoom": ("ENRICHMENT_ZOOM", int),
    "cache_ttl_seconds": ("ENRICHMENT_CACHE_TTL_SECONDS", int),
}


def load_discover_config(path: Optional[str] = None) -> bool:
    """Load Discover overrides from a JSON file.

    Updates module-level globals with values from the file. Unknown keys are
    ignored. Returns True if the file was loaded, False if it does not exist.
    """
    if path is None:
        path = str(_REPO_ROOT / "discover_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()
    for key, (name, cast) in _OVERRIDABLE.items():
        value = data.get(key)
        if value is None:
            continue
        if cast is list:
            values = [str(v).strip() for v in value if str(v).strip()]
            if values:
                globals_ref[name] = values
        else:
            globals_ref[name] = cast(value)

    limit = int(globals_ref["DEFAULT_LIMIT"])
    globals_ref["DEFAULT_LIMIT"] = max(MIN_LIMIT, min(MAX_LIMIT, limit))
    return True
