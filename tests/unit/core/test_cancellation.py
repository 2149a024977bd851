"""Tests for CancelToken"""

import threading
from unittest.mock import Mock

import pytest

from sfgate.core.cancellation import CancelToken


@pytest.mark.unit
def test_cancel_runs_callbacks_once():
    token = CancelToken()
    callback = Mock()
    token.register(callback)

    token.cancel()
    token.cancel()

    assert token.cancelled
    callback.assert_called_once()


@pytest.mark.unit
def test_register_after_cancel_runs_immediately():
    token = CancelToken()
    token.cancel()
    callback = Mock()

    unregister = token.register(callback)

    callback.assert_called_once()
    unregister()


@pytest.mark.unit
def test_unregistered_callback_is_not_run():
    token = CancelToken()
    callback = Mock()
    unregister = token.register(callback)

    unregister()
    token.cancel()

    callback.assert_not_called()


@pytest.mark.unit
def test_wait_returns_when_cancelled_from_other_thread():
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()

    assert token.wait(timeout=5)


@pytest.mark.unit
def test_wait_times_out():
    assert CancelToken().wait(timeout=0.01) is False
