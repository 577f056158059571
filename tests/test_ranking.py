from discover import config
from discover.gemini_client import BaseGeminiClient, GeminiCallResult
from discover.models import Candidate, Coordinate, Day, Stop
from discover.ranking import (
    assisted_rank,
    assisted_rank_stream,
    build_rank_prompt,
    deterministic_rank,
    fallback_rationale,
    placement_text,
)

DAY = Day(
    id="d1",
    label="Day 1",
    destinations=[
        Stop(id="s1", name="Santa Monica Pier", notes="sunset", location=Coordinate(34.0, -118.5)),
    ],
)


def _candidate(cid, detour, **kwargs):
    return Candidate(
        candidate_id=cid,
        place_id=cid,
        name=f"Place {cid}",
        address="",
        location=Coordinate(34.0, -118.5),
        detour_km=detour,
        insert_after_stop_id="s1",
        insert_after_name="Santa Monica Pier",
        **kwargs,
    )


class FakeGemini(BaseGeminiClient):
    def __init__(self, data=None, status="ok", elements=None):
        self.data = data
        self.status = status
        self.elements = elements or []
        self.prompts = []
        self.closed = False

    def generate_json(self, prompt_name, prompt_text, prompt_hash, validator=None, response_schema=None):
        self.prompts.append(prompt_text)
        return GeminiCallResult(
            status=self.status,
            raw_text="",
            data=self.data,
            model="fake",
            prompt_name=prompt_name,
            prompt_hash=prompt_hash,
            error=None if self.status == "ok" else "boom",
        )

    def stream_json_elements(self, prompt_name, prompt_text, response_schema=None):
        self.prompts.append(prompt_text)
        try:
            for element in self.elements:
                yield element
        finally:
            self.closed = True


def test_fallback_rationale_prefers_description_then_review():
    assert fallback_rationale(_candidate("a", 1.0, description="Tide pools")) == "Tide pools"
    assert fallback_rationale(_candidate("a", 1.0, featured_user_review="Loved it")) == "“Loved it”"
    assert fallback_rationale(_candidate("a", 1.24)) == (
        "Low detour (~1.2 km) and a great fit for your day."
    )


def test_placement_text_names_anchor():
    assert placement_text(_candidate("a", 1.0)) == "Fits best after Santa Monica Pier."


def test_deterministic_rank_sorts_by_detour_and_limits():
    candidates = [_candidate("a", 3.0), _candidate("b", 1.0), _candidate("c", 2.0)]
    ranked = deterministic_rank(candidates, 2)
    assert [s.candidate_id for s in ranked] == ["b", "c"]


def test_deterministic_rank_is_stable_for_ties():
    candidates = [_candidate("a", 1.0), _candidate("b", 1.0)]
    assert [s.candidate_id for s in deterministic_rank(candidates, 2)] == ["a", "b"]


def test_assisted_rank_drops_unknown_ids_and_keeps_ground_truth():
    candidates = [_candidate("a", 3.0), _candidate("b", 1.0)]
    gemini = FakeGemini(
        data={
            "suggestions": [
                {"candidateId": "invented", "whyItFits": "Not real"},
                {"candidateId": "a", "whyItFits": "Great tacos."},
                {"candidateId": "a", "whyItFits": "Duplicate."},
                {"candidateId": "b", "whyItFits": ""},
            ]
        }
    )
    ranked = assisted_rank(DAY, candidates, 5, gemini)
    # "b" came back without a rationale and is dropped.
    assert [s.candidate_id for s in ranked] == ["a"]
    assert ranked[0].why_it_fits == "Great tacos."
    assert ranked[0].detour_km == 3.0
    assert ranked[0].insert_after_stop_id == "s1"


def test_assisted_rank_all_invalid_falls_back_to_detour_order():
    candidates = [_candidate("a", 3.0), _candidate("b", 1.0)]
    gemini = FakeGemini(data={"suggestions": [{"candidateId": "zzz", "whyItFits": "x"}]})
    ranked = assisted_rank(DAY, candidates, 2, gemini)
    assert [s.candidate_id for s in ranked] == ["b", "a"]


def test_assisted_rank_failed_call_falls_back():
    candidates = [_candidate("a", 3.0), _candidate("b", 1.0)]
    ranked = assisted_rank(DAY, candidates, 1, FakeGemini(data=None, status="http_error"))
    assert [s.candidate_id for s in ranked] == ["b"]


def test_assisted_rank_only_allows_submitted_candidates(monkeypatch):
    monkeypatch.setattr(config, "RANKING_MAX_CANDIDATES", 1)
    candidates = [_candidate("far", 9.0), _candidate("near", 1.0)]
    gemini = FakeGemini(
        data={"suggestions": [{"candidateId": "far", "whyItFits": "x"}, {"candidateId": "near", "whyItFits": "y"}]}
    )
    ranked = assisted_rank(DAY, candidates, 2, gemini)
    assert [s.candidate_id for s in ranked] == ["near"]
    assert '"far"' not in gemini.prompts[0]


def test_prompt_includes_itinerary_and_candidates():
    prompt = build_rank_prompt(DAY, [_candidate("a", 1.0)], 3)
    assert "Santa Monica Pier (notes: sunset)" in prompt
    assert '"candidateId": "a"' in prompt
    assert "Return up to 3 items." in prompt


def test_assisted_stream_filters_and_closes_upstream():
    candidates = [_candidate("a", 3.0), _candidate("b", 1.0)]
    gemini = FakeGemini(
        elements=[
            {"candidateId": "nope", "whyItFits": "x"},
            {"candidateId": "b", "whyItFits": "Close by."},
            {"candidateId": "a", "whyItFits": "Worth it."},
        ]
    )
    stream = assisted_rank_stream(DAY, candidates, 2, gemini)
    first = next(stream)
    assert first.candidate_id == "b"
    stream.close()
    assert gemini.closed is True
