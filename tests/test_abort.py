"""
Tests for AbortSignal - cooperative cancellation.
"""

import threading

import pytest

from ralphloop.abort import AbortSignal, GenerationCancelled


class TestAbortSignal:
    def test_starts_clear(self) -> None:
        """Test that a new signal is not aborted."""
        signal = AbortSignal()
        assert not signal.aborted
        assert signal.reason is None
        signal.raise_if_aborted()

    def test_abort_sets_reason(self) -> None:
        """Test that abort records the reason and raises on check."""
        signal = AbortSignal()
        signal.abort("user pressed ctrl-c")

        assert signal.aborted
        assert signal.reason == "user pressed ctrl-c"
        with pytest.raises(GenerationCancelled, match="ctrl-c"):
            signal.raise_if_aborted()

    def test_first_reason_wins(self) -> None:
        """Test that a second abort keeps the first reason."""
        signal = AbortSignal()
        signal.abort("first")
        signal.abort("second")
        assert signal.reason == "first"

    def test_wait_times_out_when_not_aborted(self) -> None:
        """Test that wait returns False on timeout."""
        assert AbortSignal().wait(0.01) is False

    def test_wait_wakes_on_abort_from_another_thread(self) -> None:
        """Test that wait returns as soon as another thread aborts."""
        signal = AbortSignal()
        timer = threading.Timer(0.01, signal.abort)
        timer.start()
        try:
            assert signal.wait(5.0) is True
        finally:
            timer.cancel()
