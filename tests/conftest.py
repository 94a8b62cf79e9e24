"""Shared fixtures: an in-memory HTTP session injected through the connection pool."""
import asyncio
import json as jsonlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import aiohttp
import pytest
from bitbucket_discovery.infrastructure.client_factory import BitbucketApiFactory, ClientServices


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Optional[Any] = None


class FakeResponse:
    def __init__(self, status: int, body: bytes, hold: Optional[asyncio.Event] = None):
        self.status = status
        self._body = body
        self._hold = hold
        self.released = False

    async def read(self) -> bytes:
        if self._hold is not None:
            await self._hold.wait()
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.released = True
        return False


class FakeSession:
    """Routes ``(method, url)`` to queued responses.

    Responses are served in order; the last one keeps being served.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[RecordedRequest] = []
        self.closed = False

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        json: Any = None,
        body: Optional[bytes] = None,
        error: Optional[Exception] = None,
        hold: Optional[asyncio.Event] = None
    ) -> None:
        if error is not None:
            response: Any = error
        else:
            if body is None:
                body = b"" if json is None else jsonlib.dumps(json).encode()
            response = (status, body, hold)
        self.routes.setdefault((method, url), []).append(response)

    def request(self, method, url, headers=None, json=None, **kwargs):
        self.requests.append(RecordedRequest(method, str(url), dict(headers or {}), json))
        queue = self.routes.get((method, str(url)))
        if not queue:
            raise aiohttp.ClientConnectionError(f"No route for {method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        status, body, hold = response
        return FakeResponse(status, body, hold)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [r.url for r in self.requests if method is None or r.method == method]


class FakePool:
    def __init__(self, session: FakeSession):
        self._session = session
        self.closed = False

    async def session(self) -> FakeSession:
        return self._session

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(session, clock):
    return ClientServices(pool=FakePool(session), clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def factory(services, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return BitbucketApiFactory(services, sleep=fake_sleep)
