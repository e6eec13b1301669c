import pytest

from sitecraft.cancellation import CancellationToken, RequestRegistry
from sitecraft.errors import GenerationCancelled
from sitecraft.retry import linear_backoff, retry_until


class Flaky:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, attempt):
        self.calls += 1
        if self.calls <= self.failures:
            raise ValueError(f"fail {attempt}")
        return f"ok on {attempt}"


def test_linear_backoff():
    delay = linear_backoff(2.0)
    assert [delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]


def test_retries_until_success_with_linear_sleeps():
    sleeps = []
    op = Flaky(2)
    out = retry_until(
        op,
        lambda r: True,
        max_attempts=3,
        backoff=linear_backoff(2.0),
        retry_on=(ValueError,),
        sleep=sleeps.append,
    )
    assert out == "ok on 3"
    assert sleeps == [2.0, 4.0]


def test_exhaustion_reraises_last_error_without_trailing_sleep():
    sleeps = []
    op = Flaky(10)
    with pytest.raises(ValueError, match="fail 3"):
        retry_until(
            op,
            lambda r: True,
            max_attempts=3,
            backoff=linear_backoff(2.0),
            retry_on=(ValueError,),
            sleep=sleeps.append,
        )
    assert op.calls == 3
    assert sleeps == [2.0, 4.0]


def test_returns_last_result_when_never_done():
    out = retry_until(lambda attempt: attempt, lambda r: False, max_attempts=3)
    assert out == 3


def test_unlisted_exceptions_propagate_immediately():
    op = Flaky(1)
    with pytest.raises(ValueError):
        retry_until(op, lambda r: True, max_attempts=3, retry_on=(KeyError,))
    assert op.calls == 1


def test_cancelled_token_prevents_any_attempt():
    token = CancellationToken("req-1")
    token.cancel()
    op = Flaky(0)
    with pytest.raises(GenerationCancelled) as exc:
        retry_until(op, lambda r: True, max_attempts=3, token=token)
    assert op.calls == 0
    assert exc.value.request_id == "req-1"


def test_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        retry_until(lambda a: a, lambda r: True, max_attempts=0)


def test_registry_supersedes_previous_request_in_same_session():
    registry = RequestRegistry()
    first = registry.begin("session-a")
    other = registry.begin("session-b")
    second = registry.begin("session-a")
    assert first.cancelled is True
    assert second.cancelled is False
    assert other.cancelled is False
    assert registry.is_current(second)
    assert not registry.is_current(first)
    assert registry.active_count() == 2


def test_registry_finish_only_clears_current_token():
    registry = RequestRegistry()
    first = registry.begin("")
    second = registry.begin("")
    registry.finish(first)
    assert registry.is_current(second)
    registry.finish(second)
    assert registry.active_count() == 0
