import json

from discover import config


def test_load_discover_config_missing_file(tmp_path):
    assert config.load_discover_config(str(tmp_path / "absent.json")) is False


def test_load_discover_config_overrides(tmp_path, monkeypatch):
    for name in ("STRUCTURED_CATEGORIES", "GUARDRAIL_MAX_KM", "DEFAULT_LIMIT", "SEARCH_RADIUS_M"):
        monkeypatch.setattr(config, name, getattr(config, name))
    path = tmp_path / "discover_config.json"
    path.write_text(
        json.dumps(
            {
                "categories": ["museum", " ", "park"],
                "guardrail_max_km": 25,
                "default_limit": 99,
                "unknown_key": True,
            }
        ),
        encoding="utf-8",
    )
    assert config.load_discover_config(str(path)) is True
    assert config.STRUCTURED_CATEGORIES == ["museum", "park"]
    assert config.GUARDRAIL_MAX_KM == 25.0
    assert config.DEFAULT_LIMIT == config.MAX_LIMIT
    assert config.SEARCH_RADIUS_M == 10_000
