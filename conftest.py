"""Pytest hooks for the sheet pipeline. Tests never talk to Redis, Supabase or an AI provider."""

import os

import pytest

SERVICE_ENV_VARS = (
    "REDIS_URL",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "OPENAI_API_KEY",
    "GROQ_API_KEY",
)


def pytest_configure(config):
    """Remind that service credentials in this terminal session are ignored by tests."""
    if any(os.environ.get(name) for name in SERVICE_ENV_VARS):
        print(
            "\nNote: service credentials found in the environment; tests unset them and use in-memory fakes.\n",
            end="",
        )


@pytest.fixture(autouse=True)
def _no_service_credentials(monkeypatch):
    for name in SERVICE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
