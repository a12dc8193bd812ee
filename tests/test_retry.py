import pytest

from chatstream.utils import retry
from chatstream.utils.retry import with_retry


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(retry.time, "sleep", delays.append)
    return delays


def test_returns_after_transient_failures(no_sleep):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("blip")
        return "ok"

    assert with_retry(flaky, max_retries=3, initial_delay=0.5) == "ok"
    assert len(attempts) == 3
    assert no_sleep == [0.5, 1.0]


def test_reraises_after_last_attempt(no_sleep):
    def always_fails():
        raise TimeoutError("still down")

    with pytest.raises(TimeoutError):
        with_retry(always_fails, max_retries=2, initial_delay=1.0)
    assert no_sleep == [1.0]


def test_non_retryable_errors_propagate_immediately(no_sleep):
    attempts = []

    def bad_request():
        attempts.append(1)
        raise ValueError("bad image")

    with pytest.raises(ValueError):
        with_retry(bad_request, max_retries=3, retry_if=lambda e: isinstance(e, ConnectionError))
    assert attempts == [1]
    assert no_sleep == []


def test_max_retries_must_be_positive():
    with pytest.raises(ValueError):
        with_retry(lambda: None, max_retries=0)


def test_retry_if_sees_each_error(no_sleep):
    seen = []

    def flaky():
        seen.append(len(seen))
        raise ConnectionError(f"blip {len(seen)}")

    with pytest.raises(ConnectionError, match="blip 2"):
        with_retry(flaky, max_retries=2, initial_delay=0.25, retry_if=lambda e: "blip" in str(e))
    assert seen == [0, 1]
    assert no_sleep == [0.25]
