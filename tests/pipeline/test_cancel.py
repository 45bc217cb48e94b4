"""Tests for the labpipe.pipeline.cancel module."""

from __future__ import annotations

import threading
import time

from labpipe.pipeline.cancel import CancelToken


class TestCancelToken:
    """Tests for CancelToken."""

    def test_initial_state(self) -> None:
        """A new token is not cancelled."""
        token = CancelToken()
        assert token.cancelled is False
        assert token.reason is None

    def test_first_reason_kept(self) -> None:
        """Only the first cancellation reason is kept."""
        token = CancelToken()
        token.cancel("pipeline timeout of 1s")
        token.cancel("later")
        assert token.cancelled is True
        assert token.reason == "pipeline timeout of 1s"

    def test_child_follows_parent(self) -> None:
        """Cancelling a parent cancels its children."""
        parent = CancelToken()
        child = parent.child()
        parent.cancel("timeout")
        assert child.cancelled is True
        assert child.reason == "timeout"

    def test_parent_ignores_child(self) -> None:
        """Cancelling a child leaves the parent running."""
        parent = CancelToken()
        child = parent.child()
        child.cancel("branch failed")
        assert child.cancelled is True
        assert parent.cancelled is False

    def test_wait_times_out(self) -> None:
        """wait returns False when nothing cancels the token."""
        assert CancelToken().wait(0.05) is False
        assert CancelToken().child().wait(0.05) is False

    def test_wait_wakes_on_parent_cancel(self) -> None:
        """A child's wait returns early when the parent is cancelled."""
        parent = CancelToken()
        child = parent.child()
        timer = threading.Timer(0.1, parent.cancel)
        timer.start()
        start = time.monotonic()
        assert child.wait(5) is True
        assert time.monotonic() - start < 2
        timer.join()
