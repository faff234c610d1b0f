"""
Pytest configuration and shared fakes for the segment cache tests.

Local overrides (e.g. LOG_LEVEL) can be put in a .env file at the project root.
"""

import asyncio
from pathlib import Path

import pytest
from dotenv import load_dotenv

from hls_prefetch_proxy.utils.http_utils import DownloadError

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class ControlledFetch:
    """
    Fetch primitive whose downloads stay in flight until the test settles them.

    Must be settled from the event loop that issued the fetch.
    """

    def __init__(self):
        self.calls = []
        self._in_flight = {}

    async def __call__(self, options: dict) -> bytes:
        url = options["url"]
        self.calls.append(url)
        future = asyncio.get_running_loop().create_future()
        self._in_flight.setdefault(url, []).append(future)
        return await future

    def call_count(self, url: str) -> int:
        return self.calls.count(url)

    def resolve(self, url: str, payload: bytes) -> None:
        self._in_flight[url].pop(0).set_result(payload)

    def fail(self, url: str, error: Exception = None) -> None:
        self._in_flight[url].pop(0).set_exception(error or DownloadError(502, f"HTTP error 502 while downloading {url}"))


class StaticFetch:
    """Fetch primitive answering from a fixed table of responses, after an optional delay."""

    def __init__(self, responses: dict, delay: float = 0):
        self.responses = responses
        self.calls = []
        self.headers = {}
        self.delay = delay

    async def __call__(self, options: dict) -> bytes:
        url = options["url"]
        self.calls.append(url)
        self.headers[url] = options.get("headers", {})
        await asyncio.sleep(self.delay)
        response = self.responses.get(url)
        if response is None:
            raise DownloadError(404, f"HTTP error 404 while downloading {url}")
        if isinstance(response, Exception):
            raise response
        return response

    def call_count(self, url: str) -> int:
        return self.calls.count(url)


@pytest.fixture
def controlled_fetch():
    return ControlledFetch()


@pytest.fixture
def settle():
    """Returns a coroutine function that lets scheduled fetch tasks run."""

    async def _settle(rounds: int = 5):
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def static_fetch():
    """Factory for StaticFetch instances."""
    return StaticFetch
