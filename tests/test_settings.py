"""Settings come from PLINTH_* environment variables."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from plinth.settings import Settings, get_settings


def test_defaults():
    settings = Settings()
    assert settings.state_path == Path("plinth.state.json")
    assert settings.build_strategy == "remote"
    assert settings.max_workers == 4


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PLINTH_MAX_WORKERS", "2")
    monkeypatch.setenv("PLINTH_BUILD_STRATEGY", "local")
    settings = get_settings()
    assert settings.max_workers == 2
    assert settings.build_strategy == "local"


def test_invalid_value_rejected(monkeypatch):
    monkeypatch.setenv("PLINTH_MAX_WORKERS", "0")
    with pytest.raises(ValidationError):
        Settings()
