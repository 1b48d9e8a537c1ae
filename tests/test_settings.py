import pytest

from lugx_analytics.settings import PipelineSettings


def test_defaults():
    settings = PipelineSettings()
    assert settings.max_batch_size == 100
    assert settings.max_batch_age == 5.0
    assert settings.bucket_seconds == 60


def test_from_env(monkeypatch):
    monkeypatch.setenv("ANALYTICS_MAX_BATCH_SIZE", "25")
    monkeypatch.setenv("ANALYTICS_MAX_BATCH_AGE", "0.5")
    monkeypatch.setenv("ANALYTICS_DEAD_LETTER_PATH", "/var/lib/lugx/dl.jsonl")

    settings = PipelineSettings.from_env()

    assert settings.max_batch_size == 25
    assert settings.max_batch_age == 0.5
    assert settings.dead_letter_path == "/var/lib/lugx/dl.jsonl"
    assert settings.write_max_attempts == PipelineSettings().write_max_attempts


def test_from_env_rejects_garbage(monkeypatch):
    monkeypatch.setenv("ANALYTICS_MAX_PENDING", "lots")
    with pytest.raises(RuntimeError):
        PipelineSettings.from_env()
