import pytest

from discover.http import BudgetExceededError, RequestBudget, RequestMetrics, redact


def test_budget_guard_stops_requests():
    budget = RequestBudget(max_places=2, max_enrichment=1)
    budget.consume("places")
    budget.consume("places")
    with pytest.raises(BudgetExceededError):
        budget.consume("places")
    assert budget.remaining("places") == 0
    assert budget.remaining("enrichment") == 1


def test_budget_counts_through_metrics():
    metrics = RequestMetrics()
    seen = []
    budget = RequestBudget(
        max_places=5, max_enrichment=1, metrics=metrics, on_consume=lambda kind, used: seen.append((kind, used))
    )
    budget.consume("enrichment")
    with pytest.raises(BudgetExceededError):
        budget.consume("enrichment")
    assert metrics.network["enrichment"] == 1
    assert seen == [("enrichment", 1)]


def test_fresh_budget_ignores_earlier_metrics():
    metrics = RequestMetrics()
    first = RequestBudget(max_places=1, max_enrichment=1, max_ranking=1, metrics=metrics)
    first.consume("ranking")
    second = RequestBudget(max_places=1, max_enrichment=1, max_ranking=1, metrics=metrics)
    assert second.remaining("ranking") == 1
    second.consume("ranking")
    assert metrics.network["ranking"] == 2


def test_unknown_kind_is_rejected():
    budget = RequestBudget(max_places=1, max_enrichment=1)
    with pytest.raises(ValueError):
        budget.consume("routes")


def test_metrics_as_dict():
    metrics = RequestMetrics()
    metrics.inc_network("places")
    metrics.inc_cache_hit("enrichment")
    metrics.inc_dedup_skip("places")
    data = metrics.as_dict()
    assert data["network"]["places"] == 1
    assert data["cache_hits"]["enrichment"] == 1
    assert data["dedup_skips"]["places"] == 1


def test_redact_hides_keys():
    text = "GET https://serpapi.com/search.json?q=x&api_key=abc123 failed for secret-xyz"
    out = redact(text, "secret-xyz")
    assert "abc123" not in out
    assert "secret-xyz" not in out
    assert "[REDACTED]" in out
