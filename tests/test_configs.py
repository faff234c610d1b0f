import pytest
from pydantic import ValidationError

from hls_prefetch_proxy.configs import Settings


def test_defaults():
    config = Settings(_env_file=None)

    assert config.max_segments == 20
    assert config.cache_key == 0
    assert config.debug_level == 0


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("MAX_SEGMENTS", "5")
    monkeypatch.setenv("CACHE_KEY", "1")
    monkeypatch.setenv("DEBUG_LEVEL", "3")
    monkeypatch.setenv("REQUEST_HEADERS", '{"referer": "https://player.example.com/"}')

    config = Settings(_env_file=None)

    assert config.max_segments == 5
    assert config.cache_key == 1
    assert config.debug_level == 3
    assert config.request_headers == {"referer": "https://player.example.com/"}


@pytest.mark.parametrize("field, value", [("max_segments", 0), ("cache_key", 3), ("debug_level", -1)])
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})
