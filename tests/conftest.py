"""
Pytest configuration and fixtures
"""
from datetime import datetime, timedelta
from typing import Optional

import pytest

from smartcal.agent.orchestrator import CommandOrchestrator
from smartcal.agent.state import ConfirmationStateMachine
from smartcal.models import CalendarEvent, RecurrenceRule
from smartcal.state import EventStore, new_event_id

# Tuesday
NOW = datetime(2026, 3, 10, 10, 0)
TZ = "Asia/Shanghai"


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_event(title: str,
                start: datetime,
                end: Optional[datetime] = None,
                **fields) -> CalendarEvent:
    fields.setdefault("timezone", TZ)
    return CalendarEvent(
        id=fields.pop("id", None) or new_event_id(),
        title=title,
        start=start,
        end=end or start + timedelta(hours=1),
        **fields,
    )


@pytest.fixture
def make_event():
    """Factory for CalendarEvent instances in the default test zone"""
    return build_event


@pytest.fixture
def weekly_rule():
    return RecurrenceRule(freq="weekly", by_weekday=[0])


@pytest.fixture
def store(tmp_path):
    """Event store persisted to a temporary file"""
    return EventStore(tmp_path / "events.json")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def confirmations(clock):
    return ConfirmationStateMachine(ttl_seconds=300, clock=clock)


@pytest.fixture
def orchestrator(store, confirmations):
    """Orchestrator pinned to NOW with the LLM disabled"""
    return CommandOrchestrator(store,
                               confirmations=confirmations,
                               llm_enabled=False,
                               now_fn=lambda tz: NOW)
