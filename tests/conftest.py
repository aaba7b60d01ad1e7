from typing import Callable, List, Optional

import httpx
import pytest
import pytest_asyncio

from apps.backend.services.keepalive.keepalive import KeepAliveScheduler


class RecordingHandler:
    """
    httpx.MockTransport handler that keeps every request it sees.
    `responder` maps a request to a response (or raises); default is 200.
    """

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is None:
            return httpx.Response(200)
        return self.responder(request)

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "HOST",
        "PORT",
        "KEEPALIVE_ENABLED",
        "KEEPALIVE_INTERVAL_MS",
        "KEEPALIVE_ENDPOINTS",
        "KEEPALIVE_EXTERNAL_ENDPOINTS",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest_asyncio.fixture
async def keepalive(handler):
    ka = KeepAliveScheduler(transport=httpx.MockTransport(handler))
    yield ka
    ka.shutdown()
    await ka.wait_idle()
