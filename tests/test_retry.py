import httpx
import pytest

from app.core.exceptions import IntelligenceError
from app.utils import retry
from app.utils.retry import with_retry


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(retry.time, "sleep", lambda s: None)


def _flaky(failures, error):
    calls = []

    def fn():
        calls.append(1)
        if len(calls) <= failures:
            raise error
        return "ok"

    return fn, calls


def test_network_error_is_retried():
    fn, calls = _flaky(2, httpx.ConnectError("down"))
    assert with_retry(fn, retries=3) == "ok"
    assert len(calls) == 3


def test_gives_up_after_last_attempt():
    fn, calls = _flaky(10, httpx.ReadTimeout("slow"))
    with pytest.raises(httpx.ReadTimeout):
        with_retry(fn, retries=2)
    assert len(calls) == 3


def test_client_error_is_not_retried():
    request = httpx.Request("POST", "https://discord.test/hook")
    error = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(400, request=request))
    fn, calls = _flaky(1, error)

    with pytest.raises(httpx.HTTPStatusError):
        with_retry(fn, retries=3)
    assert len(calls) == 1


def test_rate_limit_is_retried():
    request = httpx.Request("POST", "https://discord.test/hook")
    error = httpx.HTTPStatusError("slow down", request=request, response=httpx.Response(429, request=request))
    fn, calls = _flaky(1, error)

    assert with_retry(fn, retries=3) == "ok"
    assert len(calls) == 2


def test_non_retryable_domain_error_raises_immediately():
    fn, calls = _flaky(1, IntelligenceError("nope"))
    with pytest.raises(IntelligenceError):
        with_retry(fn)
    assert len(calls) == 1


def test_retry_on_restricts_exceptions():
    fn, calls = _flaky(1, ValueError("x"))
    assert with_retry(fn, retry_on=(ValueError,)) == "ok"
    assert len(calls) == 2
