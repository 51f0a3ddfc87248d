"""
Tests for Session - the per-run unit of state.

These tests verify that a session owns its feedback queue and its
resources, and that closing it releases everything.
"""

import pytest

from ralphloop.session import Session


class Handle:
    def __init__(self, name: str, log: list[str], fail: bool = False) -> None:
        self.name = name
        self.log = log
        self.fail = fail

    def close(self) -> None:
        self.log.append(self.name)
        if self.fail:
            raise OSError(f"{self.name} would not close")


class TestSessionBasics:
    """Test basic session operations."""

    def test_session_creates_with_unique_id(self) -> None:
        """Each session should have a unique ID."""
        assert Session().id != Session().id

    def test_created_at_is_timezone_aware(self) -> None:
        """Test that created_at carries a timezone."""
        assert Session().created_at.tzinfo is not None


class TestFeedbackQueue:
    """User turns travel through an explicit FIFO queue."""

    def test_turns_come_out_in_order(self) -> None:
        """Test FIFO turn order."""
        session = Session()
        session.push_turn("first")
        session.push_turn("second")

        assert session.pending_turns == 2
        assert session.next_turn() == "first"
        assert session.next_turn() == "second"
        assert session.pending_turns == 0

    def test_consumed_turns_are_recorded(self) -> None:
        """Test that consumed turns are recorded."""
        session = Session()
        session.push_turn("a")
        session.push_turn("b")
        session.next_turn()

        assert session.turns == ["a"]

    def test_empty_queue_raises(self) -> None:
        """Test next_turn on an empty queue."""
        with pytest.raises(IndexError):
            Session().next_turn()


class TestSessionClose:
    """Closing releases resources and discards state."""

    def test_resources_closed_in_reverse_order(self) -> None:
        """Test reverse close order."""
        log: list[str] = []
        session = Session()
        session.attach(Handle("sandbox", log))
        session.attach(Handle("client", log))

        session.close()

        assert log == ["client", "sandbox"]
        assert session.is_closed

    def test_failing_resource_does_not_block_others(self) -> None:
        """Test that one failing close does not stop the rest."""
        log: list[str] = []
        session = Session()
        session.attach(Handle("first", log))
        session.attach(Handle("broken", log, fail=True))

        session.close()

        assert log == ["broken", "first"]

    def test_close_is_idempotent(self) -> None:
        """Test that closing twice is harmless."""
        log: list[str] = []
        session = Session()
        session.attach(Handle("only", log))

        session.close()
        session.close()

        assert log == ["only"]

    def test_close_discards_state(self) -> None:
        """Test that close drops queued turns and metadata."""
        session = Session()
        session.metadata["key"] = "value"
        session.push_turn("pending")

        session.close()

        assert session.metadata == {}
        assert session.pending_turns == 0

    def test_closed_session_rejects_use(self) -> None:
        """Test that a closed session rejects use."""
        session = Session()
        session.close()

        with pytest.raises(RuntimeError, match="is closed"):
            session.push_turn("late")
        with pytest.raises(RuntimeError):
            session.attach(Handle("late", []))

    def test_context_manager_closes_on_error(self) -> None:
        """Test that the with-block closes on error."""
        log: list[str] = []

        with pytest.raises(ValueError):
            with Session() as session:
                session.attach(Handle("guarded", log))
                raise ValueError("boom")

        assert log == ["guarded"]
