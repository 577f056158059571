import json

from discover.models import Coordinate, Suggestion
from discover.streaming import collect_records, encode_ndjson, is_error_record, stream_records


def _suggestion(cid):
    return Suggestion(
        candidate_id=cid,
        place_id=cid,
        name=cid,
        address="",
        location=Coordinate(1.0, 2.0),
        detour_km=1.0,
        insert_after_stop_id="s1",
        why_it_fits="fits",
        placement_text="Fits best after A.",
        source_kind="structured",
    )


class TrackedUpstream:
    """Generator wrapper recording how many items were pulled and whether it was closed."""

    def __init__(self, ids, fail_after=None):
        self.ids = ids
        self.fail_after = fail_after
        self.pulled = 0
        self.closed = False
        self._gen = self._run()

    def _run(self):
        try:
            for idx, cid in enumerate(self.ids):
                if self.fail_after is not None and idx >= self.fail_after:
                    raise RuntimeError("upstream broke")
                self.pulled += 1
                yield _suggestion(cid)
        finally:
            self.closed = True

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._gen)

    def close(self):
        self._gen.close()


def test_stops_after_limit_and_closes_upstream():
    upstream = TrackedUpstream(["a", "b", "c", "d", "e"])
    records = list(stream_records(upstream, 3))
    assert [r["candidate_id"] for r in records] == ["a", "b", "c"]
    assert upstream.pulled == 3
    assert upstream.closed is True


def test_duplicate_ids_are_emitted_once():
    upstream = TrackedUpstream(["a", "a", "b", "a", "c"])
    records = collect_records(upstream, 5)
    assert [r["candidate_id"] for r in records] == ["a", "b", "c"]


def test_consumer_close_propagates_upstream():
    upstream = TrackedUpstream(["a", "b", "c"])
    stream = stream_records(upstream, 3)
    assert next(stream)["candidate_id"] == "a"
    stream.close()
    assert upstream.closed is True
    assert upstream.pulled == 1


def test_failure_after_first_record_yields_error_and_ends():
    upstream = TrackedUpstream(["a", "b", "c"], fail_after=1)
    records = list(stream_records(upstream, 3, fallback=lambda: [_suggestion("z")]))
    assert records[0]["candidate_id"] == "a"
    assert records[-1] == {"error": "upstream broke"}
    assert len(records) == 2
    assert is_error_record(records[-1])
    assert not is_error_record(records[0])


def test_failure_before_first_record_uses_fallback():
    upstream = TrackedUpstream(["a"], fail_after=0)
    records = list(stream_records(upstream, 2, fallback=lambda: [_suggestion("x"), _suggestion("y")]))
    assert [r["candidate_id"] for r in records] == ["x", "y"]


def test_empty_upstream_uses_fallback():
    records = list(stream_records(iter(()), 1, fallback=lambda: [_suggestion("x"), _suggestion("y")]))
    assert [r["candidate_id"] for r in records] == ["x"]


def test_empty_upstream_without_fallback_is_empty():
    assert list(stream_records(iter(()), 3)) == []


def test_encode_ndjson_is_one_compact_line():
    line = encode_ndjson({"name": "Café", "n": 1})
    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line) == {"name": "Café", "n": 1}
    assert "Café" in line
