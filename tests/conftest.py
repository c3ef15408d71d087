"""
Pytest will auto-discover / import this file called 'conftest.py'.
This file defines fixtures/variables required for testing multiple layers.
"""

import itertools
from typing import Callable, Generator

import pytest
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.core.events import EventBus
from src.db.memory_store import StoreConnection, StoreHub
from src.db.schema import Base

# Setup an in-memory SQLite database for testing
DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Connection to a test database. Tables are removed at teardown to make unit tests independent of each other."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        Base.metadata.drop_all(bind=engine)
        db.close()


@pytest.fixture
def db_session_shared() -> Generator[Session, None, None]:
    """Connection to a test database. Mock real setup with multiple sessions connecting to the same engine / database tables."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# --- REPLICATED STORE ---
class FakeClock:
    """Milliseconds, advancing by one on every read so server timestamps are distinct and ordered."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self._ticks = itertools.count(start)

    def __call__(self) -> int:
        return next(self._ticks)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hub(clock: FakeClock) -> StoreHub:
    """Shared backend, delivering notifications as soon as something changes."""
    return StoreHub(clock=clock)


@pytest.fixture
def delayed_hub(clock: FakeClock) -> StoreHub:
    """Shared backend that holds every notification back until flush() is called."""
    return StoreHub(clock=clock, auto_flush=False)


class EventRecorder:
    """Collects every published event of the given types, in order."""

    def __init__(self, events: EventBus, *event_types: type) -> None:
        self.received: list = []
        for event_type in event_types:
            events.subscribe(event_type, self.received.append)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.received if isinstance(event, event_type)]


@pytest.fixture
def connect(hub: StoreHub) -> Callable[[str], StoreConnection]:
    """Open a connection on the shared hub with a readable client id."""

    def _connect(client_id: str) -> StoreConnection:
        return hub.connect(client_id)

    return _connect


@pytest.fixture
def record_events() -> Callable[..., EventRecorder]:
    """record_events(bus, MoveApplied, ...) starts recording the given event types on the bus."""

    def _record(events: EventBus, *event_types: type) -> EventRecorder:
        return EventRecorder(events, *event_types)

    return _record
