from __future__ import annotations

from collections.abc import Generator

import pytest

from testcase_search.config import settings as settings_module


@pytest.fixture(autouse=True)
def stable_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """
    Pin the environment so every test sees the same Settings.

    Retry waits and the chunk start delay are zeroed so failure paths run
    instantly, and the rate limit is raised so API tests never trip it.
    """
    settings_module.get_settings.cache_clear()
    monkeypatch.setenv("ENVIRONMENT", "local")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("RETRY_MIN_WAIT_SECONDS", "0")
    monkeypatch.setenv("RETRY_MAX_WAIT_SECONDS", "0")
    monkeypatch.setenv("EMBEDDING_BATCH_DELAY_SECONDS", "0")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "1000")
    for name in (
        "PINECONE_API_KEY",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "EXPANSION_DICTIONARY_PATH",
    ):
        monkeypatch.delenv(name, raising=False)

    yield

    settings_module.get_settings.cache_clear()
