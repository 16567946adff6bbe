"""Tests for the cancellation handle and run_cancellable."""

import threading
import time

import pytest

from tandem.cancel import CancelToken, run_cancellable
from tandem.errors import AgentError, Canceled


class TestCancelToken:
    def test_cancel_and_reset(self):
        token = CancelToken()
        assert not token.is_canceled
        token.cancel()
        assert token.is_canceled
        token.reset()
        assert not token.is_canceled

    def test_check_raises_when_canceled(self):
        token = CancelToken()
        token.check()
        token.cancel()
        with pytest.raises(Canceled):
            token.check()

    def test_wait_returns_on_cancel(self):
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()
        assert token.wait(timeout=5)

    def test_canceled_is_not_an_agent_error(self):
        assert not issubclass(Canceled, AgentError)


class TestRunCancellable:
    def test_no_token_calls_directly(self):
        assert run_cancellable(None, lambda a, b=0: a + b, 1, b=2) == 3

    def test_returns_value(self):
        token = CancelToken()
        assert run_cancellable(token, lambda: "ok", poll_interval=0.01) == "ok"

    def test_reraises_worker_exception(self):
        def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            run_cancellable(CancelToken(), boom, poll_interval=0.01)

    def test_already_canceled_does_not_start(self):
        token = CancelToken()
        token.cancel()
        called = []
        with pytest.raises(Canceled):
            run_cancellable(token, lambda: called.append(1))
        assert called == []

    def test_cancel_while_running(self):
        token = CancelToken()
        release = threading.Event()

        def slow():
            release.wait(5)
            return "late"

        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()
        with pytest.raises(Canceled):
            run_cancellable(token, slow, poll_interval=0.01)
        assert time.monotonic() - started < 2
        release.set()
