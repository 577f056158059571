import json

import pytest

import run
from discover.errors import MisconfiguredKeyError
from discover.gemini_client import NoopGeminiClient
from discover.models import trip_to_dict, Coordinate, Day, Stop, Trip


class FakePlacesClient:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error

    def search_nearby(self, center, radius_m, category):
        if self.error is not None:
            raise self.error
        return list(self.rows) if category == "cafe" else []

    def details(self, place_id):
        return None

    def find_place(self, text, center, radius_m):
        return None


ROWS = [
    {"place_id": "c2", "name": "Cafe Two", "address": "", "lat": 34.06, "lng": -118.24, "types": ["cafe"]},
    {"place_id": "c1", "name": "Cafe One", "address": "", "lat": 34.051, "lng": -118.24, "types": ["cafe"]},
]


def _write_trip(tmp_path, stops=None):
    trip = Trip(
        id="t1",
        name="LA",
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        days=[
            Day(
                id="d1",
                label="Day 1",
                destinations=stops
                if stops is not None
                else [Stop(id="s1", name="Downtown", location=Coordinate(34.05, -118.24))],
            )
        ],
    )
    path = tmp_path / "trip.json"
    path.write_text(json.dumps(trip_to_dict(trip)), encoding="utf-8")
    return path


@pytest.fixture
def cli_env(monkeypatch):
    monkeypatch.setattr(run, "load_env", lambda *args, **kwargs: None)
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "dummy")

    def install(places):
        monkeypatch.setattr(
            run, "build_clients", lambda api_key, args, cache: (places, None, NoopGeminiClient())
        )

    return install


def test_stream_writes_ndjson(tmp_path, capsys, cli_env):
    cli_env(FakePlacesClient(ROWS))
    path = _write_trip(tmp_path)
    code = run.main(["--trip", str(path), "--day", "d1", "--limit", "2", "--stream", "--no-cache"])
    assert code == 0
    lines = capsys.readouterr().out.splitlines()
    assert [json.loads(line)["candidate_id"] for line in lines] == ["c1", "c2"]


def test_batch_writes_json_file(tmp_path, cli_env):
    cli_env(FakePlacesClient(ROWS))
    path = _write_trip(tmp_path)
    out = tmp_path / "suggestions.json"
    code = run.main(["--trip", str(path), "--day", "d1", "--no-cache", "--out", str(out)])
    assert code == 0
    data = json.loads(out.read_text(encoding="utf-8"))
    assert [r["candidate_id"] for r in data["suggestions"]] == ["c1", "c2"]


def test_accept_inserts_stop_into_trip(tmp_path, capsys, cli_env):
    cli_env(FakePlacesClient(ROWS))
    path = _write_trip(tmp_path)
    code = run.main(["--trip", str(path), "--day", "d1", "--no-cache", "--accept", "c2"])
    assert code == 0
    accepted = json.loads(capsys.readouterr().out)
    trip = json.loads(path.read_text(encoding="utf-8"))
    destinations = trip["days"][0]["destinations"]
    assert [d["name"] for d in destinations] == ["Downtown", "Cafe Two"]
    assert destinations[1]["id"] == accepted["stop_id"]
    assert destinations[1]["placeId"] == "c2"


def test_precondition_exit_code(tmp_path, capsys, cli_env):
    cli_env(FakePlacesClient(ROWS))
    path = _write_trip(tmp_path, stops=[])
    code = run.main(["--trip", str(path), "--day", "d1", "--no-cache"])
    assert code == 2
    assert "Add at least one destination first" in capsys.readouterr().err


def test_unknown_day_and_bad_limit(tmp_path, cli_env):
    cli_env(FakePlacesClient(ROWS))
    path = _write_trip(tmp_path)
    assert run.main(["--trip", str(path), "--day", "nope", "--no-cache"]) == 2
    assert run.main(["--trip", str(path), "--day", "d1", "--limit", "0", "--no-cache"]) == 2


def test_misconfigured_key_exit_code(tmp_path, capsys, cli_env):
    cli_env(FakePlacesClient(error=MisconfiguredKeyError("Misconfigured Google Maps key.")))
    path = _write_trip(tmp_path)
    assert run.main(["--trip", str(path), "--day", "d1", "--stream", "--no-cache"]) == 1
    assert "Misconfigured Google Maps key." in capsys.readouterr().err


def test_missing_api_key(tmp_path, monkeypatch, cli_env):
    cli_env(FakePlacesClient(ROWS))
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    path = _write_trip(tmp_path)
    assert run.main(["--trip", str(path), "--day", "d1", "--no-cache"]) == 1
