"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from dotenv import load_dotenv as _load_dotenv

from discover import config
from discover.cache import MemoryCache, ResponseCache, SqliteCache
from discover.enrichment_client import EnrichmentClient
from discover.errors import DiscoverError, PreconditionError
from discover.gemini_client import BaseGeminiClient, GeminiClient, NoopGeminiClient
from discover.http import HttpClient, RequestMetrics
from discover.itinerary import find_day, insert_suggestion
from discover.models import Suggestion, Trip, trip_from_dict, trip_to_dict
from discover.pipeline import run_discover, stream_discover, validate_limit
from discover.places_client import PlacesClient
from discover.reporting import ensure_dir, write_json_object, write_ndjson, write_suggestions_json
from discover.streaming import is_error_record

logger = logging.getLogger("discover.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PRECONDITION = 2


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Suggest nearby places that fit a trip day")
    parser.add_argument("--trip", type=str, required=True, help="Path to the trip JSON document")
    parser.add_argument("--day", type=str, required=True, help="Id of the day to discover for")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help=f"Number of suggestions ({config.MIN_LIMIT}-{config.MAX_LIMIT}, default: {config.DEFAULT_LIMIT})",
    )
    parser.add_argument("--stream", action="store_true", help="Write suggestions to stdout as NDJSON")
    parser.add_argument("--no-enrichment", action="store_true", help="Skip the free-text enrichment search")
    parser.add_argument("--no-rank", action="store_true", help="Order by detour only, without Gemini")
    cache_group = parser.add_mutually_exclusive_group()
    cache_group.add_argument("--cache-path", type=str, default=config.CACHE_DB_PATH)
    cache_group.add_argument("--no-cache", action="store_true", help="Keep the response cache in memory only")
    parser.add_argument("--out", type=str, default=None, help="Write the suggestion list to this JSON file")
    parser.add_argument(
        "--accept",
        type=str,
        default=None,
        metavar="CANDIDATE_ID",
        help="Insert this suggestion into the day and rewrite the trip file",
    )
    return parser.parse_args(argv)


def load_trip(path: str) -> Trip:
    with open(path, "r", encoding="utf-8") as f:
        return trip_from_dict(json.load(f))


def build_cache(args: argparse.Namespace) -> ResponseCache:
    if args.no_cache:
        return MemoryCache()
    return SqliteCache(args.cache_path)


def build_clients(
    api_key: str,
    args: argparse.Namespace,
    cache: ResponseCache,
) -> tuple[PlacesClient, Optional[EnrichmentClient], BaseGeminiClient]:
    http_client = HttpClient(
        api_key=api_key,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
    )
    places_client = PlacesClient(http_client)

    enrichment_client: Optional[EnrichmentClient] = None
    if not args.no_enrichment:
        enrichment_client = EnrichmentClient.from_env(cache=cache)
        if enrichment_client is None:
            logger.info("SERPAPI_API_KEY not set; enrichment disabled")

    gemini_client: BaseGeminiClient
    if args.no_rank:
        gemini_client = NoopGeminiClient("skipped_disabled")
    else:
        gemini_client = GeminiClient.from_env()
        if not gemini_client.enabled:
            logger.info("GEMINI_API_KEY not set; using detour order")
    return places_client, enrichment_client, gemini_client


def _watch_errors(records: Iterable[Dict[str, Any]], errors: List[str]) -> Iterator[Dict[str, Any]]:
    for record in records:
        if is_error_record(record):
            errors.append(str(record.get("error")))
        yield record


def accept_suggestion(
    trip_path: str,
    trip: Trip,
    day_id: str,
    records: List[Dict[str, Any]],
    candidate_id: str,
) -> Optional[Dict[str, Any]]:
    for record in records:
        if record.get("candidate_id") == candidate_id:
            stop = insert_suggestion(trip, day_id, Suggestion.from_record(record))
            write_json_object(trip_path, trip_to_dict(trip))
            return {"accepted": candidate_id, "stop_id": stop.id, "name": stop.name}
    return None


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if config.load_discover_config():
        logger.info("Loaded discover_config.json overrides")

    try:
        limit = validate_limit(args.limit)
    except ValueError as exc:
        print(f"Invalid --limit: {exc}", file=sys.stderr)
        return EXIT_PRECONDITION

    api_key = (os.environ.get("GOOGLE_MAPS_API_KEY") or "").strip()
    if not api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        return EXIT_ERROR

    try:
        trip = load_trip(args.trip)
        day = find_day(trip, args.day)
    except (OSError, ValueError, KeyError) as exc:
        print(f"Could not load trip: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_PRECONDITION

    cache = build_cache(args)
    metrics = RequestMetrics()
    places_client, enrichment_client, gemini_client = build_clients(api_key, args, cache)
    try:
        if args.stream and not args.accept:
            errors: List[str] = []
            records = stream_discover(
                day,
                places_client,
                limit=limit,
                enrichment_client=enrichment_client,
                gemini_client=gemini_client,
                metrics=metrics,
            )
            try:
                write_ndjson(_watch_errors(records, errors), sys.stdout)
            finally:
                close = getattr(records, "close", None)
                if callable(close):
                    close()
            return EXIT_ERROR if errors else EXIT_OK

        result = run_discover(
            day,
            places_client,
            limit=limit,
            enrichment_client=enrichment_client,
            gemini_client=gemini_client,
            metrics=metrics,
        )
        logger.info(
            "Discover finished: mode=%s suggestions=%s enrichment=%s",
            result.mode,
            len(result.suggestions),
            result.collection.enrichment_status,
        )

        if args.accept:
            accepted = accept_suggestion(args.trip, trip, day.id, result.suggestions, args.accept)
            if accepted is None:
                print(f"Candidate {args.accept} is not among the current suggestions", file=sys.stderr)
                return EXIT_ERROR
            print(json.dumps(accepted, ensure_ascii=False))
            return EXIT_OK

        if args.out:
            ensure_dir(os.path.dirname(os.path.abspath(args.out)))
            write_suggestions_json(args.out, result.suggestions)
            print(f"Done. {len(result.suggestions)} suggestions written to {args.out}")
        else:
            print(json.dumps({"suggestions": result.suggestions}, ensure_ascii=False, indent=2))
        return EXIT_OK
    except PreconditionError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_PRECONDITION
    except DiscoverError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except Exception as exc:
        logger.exception("Discover failed")
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        logger.info("Requests: %s", metrics.as_dict())
        if isinstance(cache, SqliteCache):
            cache.close()


if __name__ == "__main__":
    raise SystemExit(main())
