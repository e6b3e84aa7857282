"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from blockflow.config import Settings


def test_jwt_secret_is_required(monkeypatch):
    monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
    with pytest.raises(ValidationError) as exc_info:
        Settings(_env_file=None)
    assert "jwt_secret_key" in str(exc_info.value)


def test_jwt_secret_from_environment(monkeypatch):
    monkeypatch.setenv("JWT_SECRET_KEY", "from-env")
    configured = Settings(_env_file=None)
    assert configured.jwt_secret_key.get_secret_value() == "from-env"
    assert "from-env" not in repr(configured)
