import pytest

from services.shared import config as config_module


def test_validate_config_raises_on_invalid_values_expected(monkeypatch):
    monkeypatch.setattr(config_module, "BACKFILL_CONCURRENCY", 0)

    with pytest.raises(ValueError) as excinfo:
        config_module.validate_config()

    assert "BACKFILL_CONCURRENCY" in str(excinfo.value)


def test_validate_config_reports_every_problem_expected(monkeypatch):
    monkeypatch.setattr(config_module, "GITLAB_PER_PAGE", 5)
    monkeypatch.setattr(config_module, "GITLAB_BASE_URL", "gitlab.com")
    monkeypatch.setattr(config_module, "BACKFILL_JITTER_MIN_MS", 900)
    monkeypatch.setattr(config_module, "BACKFILL_JITTER_MAX_MS", 100)

    with pytest.raises(ValueError) as excinfo:
        config_module.validate_config()

    message = str(excinfo.value)
    assert "GITLAB_PER_PAGE" in message
    assert "GITLAB_BASE_URL" in message
    assert "BACKFILL_JITTER_MIN_MS" in message


def test_validate_config_passes_with_valid_values_expected(monkeypatch):
    monkeypatch.setattr(config_module, "GITLAB_BASE_URL", "https://gitlab.com")
    monkeypatch.setattr(config_module, "GITLAB_PER_PAGE", 100)
    monkeypatch.setattr(config_module, "GITLAB_MAX_PAGES", 10)
    monkeypatch.setattr(config_module, "BACKFILL_CONCURRENCY", 4)
    monkeypatch.setattr(config_module, "BACKFILL_JITTER_MIN_MS", 100)
    monkeypatch.setattr(config_module, "BACKFILL_JITTER_MAX_MS", 400)

    config_module.validate_config()
