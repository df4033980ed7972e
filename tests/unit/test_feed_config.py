import dataclasses

import pytest

from autofeed.config import FeedConfig


def test_defaults():
    config = FeedConfig()
    assert config.automated_scans_enabled
    assert config.activity_message_threshold == 15
    assert config.summary_max_chars == 140
    assert config.cooldown_seconds == 30 * 60


def test_config_is_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        FeedConfig().lookback_hours = 5


@pytest.mark.parametrize(
    ("minutes", "expected"),
    [(240, 14_400), (1, 300), (10_000, 86_400)],
)
def test_state_ttl_is_clamped(minutes, expected):
    assert FeedConfig(activity_state_ttl_minutes=minutes).state_ttl_seconds == expected


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("AUTOFEED_ACTIVITY_MESSAGE_THRESHOLD", "20")
    monkeypatch.setenv("AUTOFEED_AUTOMATED_SCANS_ENABLED", "false")
    monkeypatch.setenv("AUTOFEED_SCAN_MODEL", "gemini-test")

    config = FeedConfig.from_env()

    assert config.activity_message_threshold == 20
    assert config.automated_scans_enabled is False
    assert config.scan_model == "gemini-test"
    assert config.lookback_hours == 2
