"""Discover pipeline orchestration."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

from . import config
from .errors import EnrichmentQuotaError, MisconfiguredKeyError, PreconditionError
from .gemini_client import BaseGeminiClient
from .http import BudgetExceededError, RequestBudget, RequestMetrics
from .insertion import annotate_candidates
from .models import Anchor, Candidate, Coordinate, Day, Stop, Suggestion, anchors_for_day
from .normalize import CandidateIndex, candidate_from_place, candidate_from_resolution, resolve_hint
from .places_client import PlacesClient
from .enrichment_client import EnrichmentClient
from .ranking import assisted_rank, assisted_rank_stream, deterministic_rank
from .streaming import collect_records, stream_records
from .validation import validate_candidates

logger = logging.getLogger(__name__)

NO_STOPS_MESSAGE = "Add at least one destination first"
NO_ANCHORS_MESSAGE = "Discover requires at least one mapped destination"


@dataclass
class CandidateCollection:
    candidates: List[Candidate]
    anchors: List[Anchor]
    center: Coordinate
    counts: Dict[str, int] = field(default_factory=dict)
    failed_categories: List[str] = field(default_factory=list)
    enrichment_status: str = "skipped"


@dataclass
class DiscoverResult:
    suggestions: List[Dict[str, Any]]
    collection: CandidateCollection
    mode: str


def check_eligibility(day: Day) -> List[Anchor]:
    if not day.destinations:
        raise PreconditionError(NO_STOPS_MESSAGE)
    anchors = anchors_for_day(day)
    if not anchors:
        raise PreconditionError(NO_ANCHORS_MESSAGE)
    return anchors


def validate_limit(limit: Optional[int]) -> int:
    if limit is None:
        return config.DEFAULT_LIMIT
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError("limit must be an integer")
    if limit < config.MIN_LIMIT or limit > config.MAX_LIMIT:
        raise ValueError(f"limit must be between {config.MIN_LIMIT} and {config.MAX_LIMIT}")
    return limit


def derive_search_area_text(stops: Sequence[Stop]) -> str:
    """Best-effort "City, State" text from the last stop's address, else its name."""
    if not stops:
        return ""
    last = stops[-1]
    name = (last.name or "").strip()
    address = (last.address or "").strip()
    if not address:
        return name
    parts = [p.strip() for p in address.split(",") if p.strip()]
    if len(parts) >= 2:
        return ", ".join(parts[-2:])
    return parts[0] if parts else name


def build_enrichment_query(stops: Sequence[Stop]) -> str:
    area = derive_search_area_text(stops)
    if not area:
        return config.ENRICHMENT_QUERY_FALLBACK
    return config.ENRICHMENT_QUERY_TEMPLATE.format(area=area)


def fetch_structured(
    places_client: PlacesClient,
    center: Coordinate,
    categories: Sequence[str],
    radius_m: int,
) -> tuple[List[List[Candidate]], List[str]]:
    """Run one nearby search per category concurrently and join on all of them.

    A misconfigured key aborts the whole fan-out. Any other failure in a
    category is logged and that category contributes nothing.
    """

    def search(category: str) -> List[Candidate]:
        rows = places_client.search_nearby(center, radius_m, category)
        return [c for c in (candidate_from_place(r) for r in rows) if c is not None]

    results: List[List[Candidate]] = []
    failed: List[str] = []
    workers = max(1, min(config.STRUCTURED_SEARCH_WORKERS, len(categories)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [(category, pool.submit(search, category)) for category in categories]
        errors: List[BaseException] = []
        for category, future in futures:
            try:
                results.append(future.result())
            except MisconfiguredKeyError as exc:
                errors.append(exc)
            except Exception as exc:
                logger.warning("Structured search for %s failed: %s", category, exc)
                failed.append(category)
                results.append([])
        if errors:
            raise errors[0]
    return results, failed


def fetch_enrichment(
    enrichment_client: EnrichmentClient,
    places_client: PlacesClient,
    day: Day,
    center: Coordinate,
) -> List[Candidate]:
    query = build_enrichment_query(day.destinations)
    hints = enrichment_client.search(query, center=center, zoom=config.ENRICHMENT_ZOOM)
    logger.info("Enrichment returned %s hints for %r", len(hints), query)

    resolved: List[Candidate] = []
    for hint in hints[: config.ENRICHMENT_MAX_RESOLUTIONS]:
        try:
            place = resolve_hint(hint, places_client, center, config.FIND_PLACE_BIAS_RADIUS_M)
        except BudgetExceededError as exc:
            logger.warning("Stopping hint resolution early: %s", exc)
            break
        if place is None:
            logger.debug("Hint %r did not resolve to a place", hint.name)
            continue
        resolved.append(candidate_from_resolution(place, hint))
    return resolved


def _invocation_view(client: Any, budget: RequestBudget, metrics: RequestMetrics) -> Any:
    # Budget, metrics and in-run dedup are scoped to one invocation.
    view = getattr(client, "for_invocation", None)
    return view(budget, metrics) if callable(view) else client


def new_budget(metrics: Optional[RequestMetrics] = None) -> RequestBudget:
    return RequestBudget(
        max_places=config.PLACES_REQUESTS_PER_INVOCATION,
        max_enrichment=config.ENRICHMENT_MAX_SEARCHES,
        max_ranking=config.RANKING_REQUESTS_PER_INVOCATION,
        metrics=metrics,
    )


def collect_candidates(
    day: Day,
    places_client: PlacesClient,
    enrichment_client: Optional[EnrichmentClient] = None,
    budget: Optional[RequestBudget] = None,
    metrics: Optional[RequestMetrics] = None,
) -> CandidateCollection:
    anchors = check_eligibility(day)
    metrics = metrics or RequestMetrics()
    if budget is None:
        budget = new_budget(metrics)
    places_client = _invocation_view(places_client, budget, metrics)
    if enrichment_client is not None:
        enrichment_client = _invocation_view(enrichment_client, budget, metrics)

    center = anchors[-1].location
    existing_place_ids = {s.place_id for s in day.destinations if s.place_id}
    index = CandidateIndex(existing_place_ids)
    counts: Dict[str, int] = {}

    logger.info("Stage 1: structured search (%s categories)", len(config.STRUCTURED_CATEGORIES))
    fetched, failed_categories = fetch_structured(
        places_client, center, config.STRUCTURED_CATEGORIES, config.SEARCH_RADIUS_M
    )
    counts["structured"] = sum(index.extend(batch) for batch in fetched)

    enrichment_status = "skipped"
    counts["enrichment"] = 0
    if enrichment_client is not None:
        logger.info("Stage 2: enrichment search")
        try:
            enriched = fetch_enrichment(enrichment_client, places_client, day, center)
            before = len(index)
            for candidate in enriched:
                index.add(candidate)
            counts["enrichment"] = len(enriched)
            counts["enrichment_new"] = len(index) - before
            enrichment_status = "ok"
        except MisconfiguredKeyError:
            raise
        except EnrichmentQuotaError as exc:
            logger.warning("Enrichment quota/limit hit; continuing with structured results only (%s)", exc)
            enrichment_status = "quota"
        except Exception as exc:
            logger.warning("Enrichment failed; continuing with structured results only (%s)", exc)
            enrichment_status = "failed"

    logger.info("Stage 3: guardrail validation")
    accepted, rejected = validate_candidates(index.values(), anchors)
    counts["rejected_guardrail"] = len(rejected)

    logger.info("Stage 4: insertion points")
    capped = accepted[: config.MAX_CANDIDATES]
    annotate_candidates(capped, anchors, day.destinations)
    counts["candidates"] = len(capped)

    return CandidateCollection(
        candidates=capped,
        anchors=anchors,
        center=center,
        counts=counts,
        failed_categories=failed_categories,
        enrichment_status=enrichment_status,
    )


def ranking_enabled(gemini_client: Optional[BaseGeminiClient]) -> bool:
    return gemini_client is not None and getattr(gemini_client, "enabled", True)


def _reserve_ranking(budget: RequestBudget) -> bool:
    try:
        budget.consume("ranking")
    except BudgetExceededError as exc:
        logger.warning("Ranking skipped, using detour order: %s", exc)
        return False
    return True


def run_discover(
    day: Day,
    places_client: PlacesClient,
    limit: Optional[int] = None,
    enrichment_client: Optional[EnrichmentClient] = None,
    gemini_client: Optional[BaseGeminiClient] = None,
    metrics: Optional[RequestMetrics] = None,
) -> DiscoverResult:
    """Collect, rank and return suggestions as one list (batch delivery)."""
    limit = validate_limit(limit)
    metrics = metrics or RequestMetrics()
    budget = new_budget(metrics)
    collection = collect_candidates(day, places_client, enrichment_client, budget, metrics)
    candidates = collection.candidates
    if not candidates:
        return DiscoverResult(suggestions=[], collection=collection, mode="empty")

    logger.info("Stage 5: ranking")
    if ranking_enabled(gemini_client) and _reserve_ranking(budget):
        selections = assisted_rank(day, candidates, limit, gemini_client)
        mode = "assisted"
    else:
        selections = deterministic_rank(candidates, limit)
        mode = "deterministic"
    records = collect_records(selections, limit)
    return DiscoverResult(suggestions=records, collection=collection, mode=mode)


def stream_discover(
    day: Day,
    places_client: PlacesClient,
    limit: Optional[int] = None,
    enrichment_client: Optional[EnrichmentClient] = None,
    gemini_client: Optional[BaseGeminiClient] = None,
    metrics: Optional[RequestMetrics] = None,
) -> Iterator[Dict[str, Any]]:
    """Collect candidates now, then return a lazy stream of suggestion records.

    Precondition and configuration errors raise here, before any record is
    produced. Failures while ranking surface as a terminal error record.
    """
    limit = validate_limit(limit)
    metrics = metrics or RequestMetrics()
    budget = new_budget(metrics)
    collection = collect_candidates(day, places_client, enrichment_client, budget, metrics)
    candidates = collection.candidates
    if not candidates:
        return iter(())

    def fallback() -> List[Suggestion]:
        return deterministic_rank(candidates, limit)

    if ranking_enabled(gemini_client) and _reserve_ranking(budget):
        selections = assisted_rank_stream(day, candidates, limit, gemini_client)
    else:
        selections = iter(fallback())
    return stream_records(selections, limit, fallback=fallback)
