"""
Tests for settings validation.
"""

import pytest
from pydantic import ValidationError

from arena.core.config import Settings


def make(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestLeverageTiers:

    def test_defaults(self):
        assert make().leverage_tiers == [1, 5, 10, 20]

    def test_sorted_and_deduplicated(self):
        assert make(leverage_tiers=[10, 1, 5, 5]).leverage_tiers == [1, 5, 10]

    @pytest.mark.parametrize("tiers", [[], [0, 1], [2, 5]])
    def test_invalid(self, tiers):
        with pytest.raises(ValidationError):
            make(leverage_tiers=tiers)


class TestBudgets:

    def test_defaults(self):
        settings = make()
        assert settings.decision_max_retries == 3
        assert settings.agent_max_attempts == 3
        assert settings.default_max_position_size == 0.3

    @pytest.mark.parametrize(
        "field,value",
        [
            ("session_minutes", 0),
            ("decision_max_retries", 0),
            ("agent_max_attempts", 0),
            ("default_max_position_size", 0),
            ("default_max_position_size", 1.5),
        ],
    )
    def test_invalid(self, field, value):
        with pytest.raises(ValidationError):
            make(**{field: value})


class TestMisc:

    def test_cors_origins_parsed(self):
        settings = make(cors_origins="http://a.test, http://b.test,,")
        assert settings.get_cors_origins() == ["http://a.test", "http://b.test"]

    def test_debug_follows_environment(self):
        assert make().is_debug
        assert not make(environment="production").is_debug

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_ATTEMPTS", "5")
        assert make().agent_max_attempts == 5
