"""Ranking and selection of validated candidates.

Deterministic mode sorts by detour. Assisted mode asks Gemini to pick and
explain, but Gemini only ever contributes the ordering and the rationale text:
detours, insertion points and coordinates always come from the candidate.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from . import config
from .gemini_client import BaseGeminiClient, hash_text, selection_schema
from .models import Candidate, Day, Suggestion

logger = logging.getLogger(__name__)

PROMPT_NAME = "discover_rank_v1"


def placement_text(candidate: Candidate) -> str:
    return f"Fits best after {candidate.insert_after_name or 'a stop'}."


def fallback_rationale(candidate: Candidate) -> str:
    if candidate.description:
        return candidate.description
    if candidate.featured_user_review:
        return f"“{candidate.featured_user_review}”"
    return f"Low detour (~{candidate.detour_km:.1f} km) and a great fit for your day."


def suggestion_from_candidate(candidate: Candidate, why_it_fits: str) -> Suggestion:
    return Suggestion(
        candidate_id=candidate.candidate_id,
        place_id=candidate.place_id,
        name=candidate.name,
        address=candidate.address,
        location=candidate.location,
        detour_km=candidate.detour_km,
        insert_after_stop_id=candidate.insert_after_stop_id,
        why_it_fits=why_it_fits,
        placement_text=placement_text(candidate),
        source_kind=candidate.source_kind,
        sources=list(candidate.sources),
        open_state=candidate.open_state,
        hours_summary=candidate.hours_summary,
    )


def deterministic_order(candidates: Iterable[Candidate]) -> List[Candidate]:
    # sorted() is stable, so equal detours keep discovery order.
    return sorted(candidates, key=lambda c: c.detour_km)


def deterministic_rank(candidates: Iterable[Candidate], limit: int) -> List[Suggestion]:
    return [
        suggestion_from_candidate(c, fallback_rationale(c))
        for c in deterministic_order(candidates)[:limit]
    ]


def build_itinerary_summary(day: Day) -> str:
    lines: List[str] = []
    for stop in day.destinations:
        name = (stop.name or "").strip()
        if not name:
            continue
        note = (stop.notes or "").strip()
        if note:
            name = f"{name} (notes: {note[: config.RANKING_NOTE_MAX_CHARS]})"
        lines.append(name)
    return "\n- ".join(lines[: config.RANKING_MAX_ITINERARY_LINES])


def build_candidate_summary(candidates: Sequence[Candidate]) -> List[Dict[str, Any]]:
    summary = []
    for c in candidates[: config.RANKING_MAX_CANDIDATES]:
        item: Dict[str, Any] = {
            "candidateId": c.candidate_id,
            "name": c.name,
            "address": c.address,
            "types": c.types[:6],
            "detourKm": round(c.detour_km, 2),
            "insertAfterName": c.insert_after_name,
            "sourceKind": c.source_kind,
            "sources": [s.to_dict() for s in c.sources[:2]],
            "highlights": c.highlights[:4],
            "activities": c.activities[:4],
            "amenities": c.amenities[:4],
        }
        for key, value in (
            ("openState", c.open_state),
            ("hoursSummary", c.hours_summary),
            ("description", c.description),
            ("featuredUserReview", c.featured_user_review),
        ):
            if value:
                item[key] = value
        summary.append(item)
    return summary


def build_rank_prompt(day: Day, candidates: Sequence[Candidate], limit: int) -> str:
    itinerary = build_itinerary_summary(day)
    return "\n".join(
        [
            "You are helping a user plan a single day road trip itinerary.",
            "Select the best suggestions from the provided candidates.",
            "",
            "Hard rules:",
            "- You MUST ONLY choose from the provided candidateId list. Do not invent places.",
            "- Prefer minimal detour, but balance with variety (attractions + food + coffee).",
            "- Avoid duplicates of the same type (e.g., 10 cafes).",
            '- If sourceKind is "enrichment" or "both", treat it as a stronger "hidden gem" signal.',
            "- If a candidate includes description / featuredUserReview / highlights, use those "
            "details (when true) instead of generic phrasing.",
            "- Do NOT mention ratings, stars, or review counts.",
            '- Do NOT output placement/ordering phrases like "Located near" or "Fits best after"; '
            "placement will be handled separately.",
            "",
            f"Return up to {limit} items.",
            "",
            "Current day itinerary destinations:",
            f"- {itinerary or '(none)'}",
            "",
            "Candidates JSON:",
            json.dumps(build_candidate_summary(candidates), ensure_ascii=False),
            "",
            'Respond with JSON: {"suggestions": [{"candidateId": ..., "whyItFits": ...}]}',
            "For each selected candidate, provide:",
            "- candidateId",
            "- whyItFits (2-3 short sentences describing what it is / what you can do there; "
            "include concrete details grounded in the candidate fields; no bullets)",
        ]
    )


def _clean_rationale(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    return text[: config.RANKING_WHY_MAX_CHARS]


def select_from_elements(
    elements: Iterable[Any],
    allowed: Dict[str, Candidate],
) -> Iterator[Suggestion]:
    """Turn raw ranker selections into suggestions.

    Elements naming an id outside `allowed`, or without a usable rationale, are
    dropped. Duplicate ids are not filtered here; delivery dedupes.
    """
    for element in elements:
        if not isinstance(element, dict):
            continue
        candidate_id = element.get("candidateId") or element.get("candidate_id")
        if not isinstance(candidate_id, str):
            continue
        candidate = allowed.get(candidate_id)
        if candidate is None:
            logger.debug("Ranker returned unknown candidate id %r", candidate_id)
            continue
        why = _clean_rationale(element.get("whyItFits") or element.get("why_it_fits"))
        if why is None:
            logger.debug("Ranker returned no rationale for %r", candidate_id)
            continue
        yield suggestion_from_candidate(candidate, why)


def _submitted(candidates: Sequence[Candidate]) -> List[Candidate]:
    # The ranker only sees the lowest-detour slice; ids outside it are not allowed back.
    return deterministic_order(candidates)[: config.RANKING_MAX_CANDIDATES]


def assisted_rank(
    day: Day,
    candidates: Sequence[Candidate],
    limit: int,
    gemini_client: BaseGeminiClient,
) -> List[Suggestion]:
    submitted = _submitted(candidates)
    allowed = {c.candidate_id: c for c in submitted}
    prompt = build_rank_prompt(day, submitted, limit)
    result = gemini_client.generate_json(
        PROMPT_NAME,
        prompt,
        hash_text(prompt),
        response_schema=selection_schema(limit),
    )
    elements: List[Any] = []
    if result.status == "ok" and result.data:
        raw = result.data.get("suggestions")
        if isinstance(raw, list):
            elements = raw
    else:
        logger.warning("Ranking call returned %s (%s)", result.status, result.error or "no detail")

    seen = set()
    suggestions: List[Suggestion] = []
    for suggestion in select_from_elements(elements, allowed):
        if suggestion.candidate_id in seen:
            continue
        seen.add(suggestion.candidate_id)
        suggestions.append(suggestion)
        if len(suggestions) >= limit:
            break

    if not suggestions:
        logger.info("Ranking produced no usable selections; falling back to detour order")
        return deterministic_rank(candidates, limit)
    return suggestions


def assisted_rank_stream(
    day: Day,
    candidates: Sequence[Candidate],
    limit: int,
    gemini_client: BaseGeminiClient,
) -> Iterator[Suggestion]:
    submitted = _submitted(candidates)
    allowed = {c.candidate_id: c for c in submitted}
    prompt = build_rank_prompt(day, submitted, limit)
    elements = gemini_client.stream_json_elements(
        PROMPT_NAME, prompt, response_schema=selection_schema(limit)
    )
    try:
        yield from select_from_elements(elements, allowed)
    finally:
        close = getattr(elements, "close", None)
        if callable(close):
            close()
