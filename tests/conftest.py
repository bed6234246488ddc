"""Shared fixtures for tollgate tests."""

import pytest

from tollgate.app.ratelimit.keys import RequestAttributes


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_request(
    path: str = "/",
    method: str = "GET",
    remote_addr: str | None = "172.217.0.46",
    headers: dict | None = None,
    user: str | None = None,
    context: dict | None = None,
) -> RequestAttributes:
    """Build request attributes with sensible defaults."""
    values = dict(context or {})
    return RequestAttributes(
        path=path,
        method=method,
        headers=headers or {},
        remote_addr=remote_addr,
        basic_auth_user=user,
        context=values.get,
    )


@pytest.fixture
def request_factory():
    return make_request
