import json

import pytest
import requests

from discover import config
from discover.errors import MisconfiguredKeyError
from discover.http import HttpClient, RequestBudget, RequestMetrics
from discover.models import Coordinate
from discover.places_client import (
    REFERRER_KEY_MESSAGE,
    PlacesClient,
    build_find_place_body,
    build_nearby_search_body,
    misconfiguration_message,
    parse_canonical_place,
    parse_places_response,
)

CENTER = Coordinate(34.05, -118.24)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.headers = {}
        self.text = json.dumps(payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    def __init__(self, responses_by_url):
        self.responses_by_url = responses_by_url
        self.calls = []

    def _respond(self, url):
        self.calls.append(url)
        response = self.responses_by_url.get(url)
        if isinstance(response, FakeResponse):
            return response
        return FakeResponse(response or {})

    def post(self, url, data=None, headers=None, timeout=None):
        return self._respond(url)

    def get(self, url, params=None, headers=None, timeout=None):
        return self._respond(url)


def make_places_client(responses_by_url, budget=None, metrics=None):
    http_client = HttpClient(api_key="dummy", timeout=1, retry_max=1, backoff_base=0.0, backoff_max=0.0)
    http_client.session = FakeSession(responses_by_url)
    return PlacesClient(http_client, budget=budget, metrics=metrics)


PLACE = {
    "id": "p1",
    "displayName": {"text": "Grand Central Market"},
    "formattedAddress": "317 S Broadway, Los Angeles, CA 90013, USA",
    "shortFormattedAddress": "317 S Broadway, Los Angeles",
    "location": {"latitude": 34.0508, "longitude": -118.2490},
    "types": ["market", "food"],
    "rating": 4.6,
    "userRatingCount": 25000,
}


def test_parse_places_response_maps_fields():
    rows = parse_places_response({"places": [PLACE, {"displayName": {"text": "No id"}}]})
    assert len(rows) == 1
    row = rows[0]
    assert row["place_id"] == "p1"
    assert row["name"] == "Grand Central Market"
    assert row["address"] == "317 S Broadway, Los Angeles"
    assert (row["lat"], row["lng"]) == (34.0508, -118.2490)
    assert row["user_rating_count"] == 25000


def test_unparseable_rating_count_only_affects_its_row():
    odd = dict(PLACE, id="p2", userRatingCount="lots")
    rows = parse_places_response({"places": [odd, PLACE]})
    assert [r["place_id"] for r in rows] == ["p2", "p1"]
    assert rows[0]["user_rating_count"] is None
    assert rows[1]["user_rating_count"] == 25000


def test_parse_canonical_place_requires_coordinates():
    place = parse_canonical_place(PLACE)
    assert place.place_id == "p1"
    assert place.address.startswith("317 S Broadway")
    assert parse_canonical_place({"id": "x", "displayName": {"text": "X"}}) is None


def test_request_bodies():
    body = build_nearby_search_body(CENTER, 10_000, "cafe")
    assert body["includedTypes"] == ["cafe"]
    assert body["locationRestriction"]["circle"]["radius"] == 10_000.0
    find = build_find_place_body("Secret Garden", CENTER, 50_000)
    assert find["textQuery"] == "Secret Garden"
    assert find["pageSize"] == 1
    assert find["locationBias"]["circle"]["center"] == {"latitude": 34.05, "longitude": -118.24}


def test_misconfiguration_messages():
    assert misconfiguration_message("API keys with referer restrictions cannot be used with this API.") == (
        REFERRER_KEY_MESSAGE
    )
    assert "invalid" in misconfiguration_message("API key not valid. Please pass a valid API key.")
    assert misconfiguration_message("Places API (New) has not been used in project 123 before or it is disabled")
    assert misconfiguration_message("Internal error") is None


def test_referrer_restricted_key_raises_misconfigured():
    error = FakeResponse(
        {"error": {"code": 403, "message": "Requests from referer <empty> are blocked."}}, status_code=403
    )
    client = make_places_client({config.PLACES_NEARBY_SEARCH_URL: error})
    with pytest.raises(MisconfiguredKeyError) as excinfo:
        client.search_nearby(CENTER, 10_000, "cafe")
    assert "referrer-restricted" in str(excinfo.value)


def test_other_errors_surface_as_http_errors():
    error = FakeResponse({"error": {"code": 400, "message": "Invalid includedTypes"}}, status_code=400)
    client = make_places_client({config.PLACES_NEARBY_SEARCH_URL: error})
    with pytest.raises(requests.HTTPError):
        client.search_nearby(CENTER, 10_000, "cafe")


def test_details_not_found_is_none():
    url = config.PLACES_DETAILS_URL_TEMPLATE.format(place_id="gone")
    error = FakeResponse({"error": {"code": 404, "message": "Not found"}}, status_code=404)
    client = make_places_client({url: error})
    assert client.details("gone") is None
    assert client.details("") is None


def test_find_place_returns_first_match():
    client = make_places_client({config.PLACES_TEXT_SEARCH_URL: {"places": [PLACE]}})
    place = client.find_place("grand central market", CENTER, 50_000)
    assert place.place_id == "p1"
    empty = make_places_client({config.PLACES_TEXT_SEARCH_URL: {"places": []}})
    assert empty.find_place("nothing", CENTER, 50_000) is None


def test_repeat_requests_are_deduplicated_and_budgeted():
    metrics = RequestMetrics()
    budget = RequestBudget(max_places=1, max_enrichment=1, metrics=metrics)
    client = make_places_client(
        {config.PLACES_NEARBY_SEARCH_URL: {"places": [PLACE]}}, budget=budget, metrics=metrics
    )
    first = client.search_nearby(CENTER, 10_000, "cafe")
    second = client.search_nearby(CENTER, 10_000, "cafe")
    assert first == second
    assert metrics.network["places"] == 1
    assert metrics.dedup_skips["places"] == 1
    assert client.http.session.calls.count(config.PLACES_NEARBY_SEARCH_URL) == 1


def test_invocation_views_do_not_share_dedup_or_budget():
    shared = make_places_client({config.PLACES_NEARBY_SEARCH_URL: {"places": [PLACE]}})
    first_metrics = RequestMetrics()
    first = shared.for_invocation(RequestBudget(max_places=1, max_enrichment=1), first_metrics)
    first.search_nearby(CENTER, 10_000, "cafe")

    second_metrics = RequestMetrics()
    second = shared.for_invocation(RequestBudget(max_places=1, max_enrichment=1), second_metrics)
    second.search_nearby(CENTER, 10_000, "cafe")

    assert shared.http.session.calls.count(config.PLACES_NEARBY_SEARCH_URL) == 2
    assert second_metrics.dedup_skips["places"] == 0
    assert shared.budget is None
    assert shared.metrics is None
