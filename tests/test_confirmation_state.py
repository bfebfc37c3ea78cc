"""
Tests for per-session pending confirmations
"""
from datetime import datetime

from conftest import build_event
from smartcal.agent.schemas import ConfirmationContext


def pending_delete(title: str = "团队会议") -> ConfirmationContext:
    event = build_event(title, datetime(2026, 3, 11, 10, 0))
    return ConfirmationContext(pending_action="delete", target_events=[event],
                               original_message=f"删除{title}", timestamp=0.0)


class TestConfirmationStateMachine:
    """Idle <-> AwaitingConfirmation transitions"""

    def test_idle_by_default(self, confirmations):
        assert confirmations.get("s1") is None
        assert not confirmations.is_awaiting("s1")

    def test_begin_stamps_clock(self, confirmations, clock):
        stored = confirmations.begin("s1", pending_delete())
        assert stored.timestamp == clock.now
        assert confirmations.is_awaiting("s1")

    def test_get_returns_copy(self, confirmations):
        confirmations.begin("s1", pending_delete())
        first = confirmations.get("s1")
        first.target_events.clear()
        assert len(confirmations.get("s1").target_events) == 1

    def test_expires_after_ttl(self, confirmations, clock):
        confirmations.begin("s1", pending_delete())
        clock.advance(300)
        assert confirmations.is_awaiting("s1")
        clock.advance(1)
        assert confirmations.get("s1") is None
        # expired entry was dropped on read
        clock.now = 1_000.0
        assert confirmations.get("s1") is None

    def test_begin_replaces_previous(self, confirmations):
        confirmations.begin("s1", pending_delete("团队会议"))
        confirmations.begin("s1", pending_delete("牙医"))
        assert confirmations.get("s1").target_events[0].title == "牙医"

    def test_clear(self, confirmations):
        confirmations.begin("s1", pending_delete())
        cleared = confirmations.clear("s1")
        assert cleared.pending_action == "delete"
        assert confirmations.get("s1") is None
        assert confirmations.clear("s1") is None
        assert confirmations.clear("") is None

    def test_sessions_are_isolated(self, confirmations):
        confirmations.begin("alice", pending_delete())
        assert confirmations.get("bob") is None
        confirmations.clear("bob")
        assert confirmations.is_awaiting("alice")
