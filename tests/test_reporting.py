import io
import json

from discover.reporting import atomic_write_text, write_json_object, write_ndjson, write_suggestions_json


class FlushCountingBuffer(io.StringIO):
    def __init__(self):
        super().__init__()
        self.flushes = 0

    def flush(self):
        self.flushes += 1
        super().flush()


def test_atomic_write_text(tmp_path):
    path = tmp_path / "atomic.txt"

    atomic_write_text(str(path), "first")
    assert path.read_text(encoding="utf-8") == "first"

    atomic_write_text(str(path), "second")
    assert path.read_text(encoding="utf-8") == "second"

    leftovers = [p for p in tmp_path.iterdir() if p.name != "atomic.txt"]
    assert not leftovers


def test_write_json_object_nested_atomic(tmp_path):
    path = tmp_path / "trip.json"
    payload = {"id": "t1", "days": [{"id": "d1", "label": "Zółć"}]}

    write_json_object(str(path), payload)

    text = path.read_text(encoding="utf-8")
    assert json.loads(text) == payload
    assert "ó" in text
    leftovers = [p for p in tmp_path.iterdir() if p.name != "trip.json"]
    assert not leftovers


def test_write_suggestions_json(tmp_path):
    path = tmp_path / "suggestions.json"
    write_suggestions_json(str(path), iter([{"candidate_id": "a"}]))
    assert json.loads(path.read_text(encoding="utf-8")) == {"suggestions": [{"candidate_id": "a"}]}


def test_write_ndjson_flushes_each_record():
    buffer = FlushCountingBuffer()
    count = write_ndjson([{"candidate_id": "a"}, {"error": "boom"}], buffer)
    lines = buffer.getvalue().splitlines()
    assert count == 2
    assert [json.loads(line) for line in lines] == [{"candidate_id": "a"}, {"error": "boom"}]
    assert buffer.flushes >= 2
