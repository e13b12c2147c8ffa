"""Shared test fixtures for PositionDesk tests.

Builders and test doubles live in ``tests/fixtures/market_data.py``;
this module wraps them as pytest fixtures.
"""

import pytest

from positiondesk.market.tick_store import TickStore
from positiondesk.schemas.enums import UserRole
from positiondesk.schemas.orders import Order
from positiondesk.session import SessionContext
from tests.fixtures.market_data import (
    BROKER_ID,
    CUSTOMER_ID,
    ManualClock,
    RecordingTransport,
    make_order,
)


@pytest.fixture
def clock() -> ManualClock:
    """A manual monotonic clock starting at t=1000s."""
    return ManualClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def tick_store() -> TickStore:
    return TickStore()


@pytest.fixture
def session() -> SessionContext:
    """Logged-in customer session."""
    context = SessionContext()
    context.login(BROKER_ID, CUSTOMER_ID, auth_token="tok-abc", role=UserRole.CUSTOMER)
    return context


@pytest.fixture
def broker_session() -> SessionContext:
    """Logged-in broker (privileged) session."""
    context = SessionContext()
    context.login(BROKER_ID, CUSTOMER_ID, auth_token="tok-abc", role=UserRole.BROKER)
    return context


@pytest.fixture
def sample_order() -> Order:
    """OPEN BUY intraday order: 3 lots x 25 at avg 100."""
    return make_order()
