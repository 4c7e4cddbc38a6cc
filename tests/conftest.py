"""
Shared fixtures for workflow tests.

Also registers the integration marker: tests against real Azure resources
only run with --run-integration.
"""

import os
import tempfile
from datetime import datetime, UTC
from unittest.mock import Mock

import pytest

from procurement_approvals.core.clock import FixedClock
from procurement_approvals.models import (
    Budget,
    BudgetScope,
    Criticality,
    LineItem,
    Requisition,
    Urgency,
    User,
    UserRole,
)
from procurement_approvals.services.events import EventPublisher
from procurement_approvals.services.storage import InMemoryProcurementStore, SQLiteProcurementStore
from procurement_approvals.workflow import build_workflow

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real Azure resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real Azure resources"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


def seed_reference_data(store):
    """Users and budgets for vessel1 under fleet1 (works for both stores)."""
    store.add_user(User(id="super1", role=UserRole.SUPERINTENDENT, vessel_assignments=["vessel1"]))
    store.add_user(User(id="pm1", role=UserRole.PROCUREMENT_MANAGER))
    store.add_user(User(id="sm1", role=UserRole.SENIOR_MANAGEMENT))
    store.add_user(User(id="captain1", role=UserRole.CAPTAIN, vessel_assignments=["vessel1"]))
    store.add_user(User(id="captain2", role=UserRole.CAPTAIN, vessel_assignments=["vessel2"]))
    store.add_user(User(id="crew1", role=UserRole.CREW, vessel_assignments=["vessel1"]))
    store.add_user(User(id="admin1", role=UserRole.ADMIN))

    store.add_budget(Budget(
        id="fleet-budget",
        scope=BudgetScope.FLEET,
        owner_id="fleet1",
        monthly_limit=1_000_000,
    ))
    store.add_budget(Budget(
        id="vessel1-budget",
        scope=BudgetScope.VESSEL,
        owner_id="vessel1",
        monthly_limit=100_000,
        parent_budget_id="fleet-budget",
    ))


@pytest.fixture
def clock():
    """Clock pinned to a January (winter) weekday morning"""
    return FixedClock(NOW)


@pytest.fixture
def store():
    """In-memory store seeded with one vessel's approvers and budgets"""
    store = InMemoryProcurementStore()
    seed_reference_data(store)
    return store


@pytest.fixture
def mock_service_bus_sender():
    """Create a mock Service Bus sender matching Azure SDK interface"""
    return Mock()


@pytest.fixture
def publisher(mock_service_bus_sender):
    return EventPublisher(service_bus_sender=mock_service_bus_sender)


@pytest.fixture
def workflow(store, publisher, clock):
    return build_workflow(store, publisher=publisher, clock=clock)


@pytest.fixture
def add_requisition(store):
    """Factory: add a requisition for vessel1 and return its id"""
    counter = {"n": 0}

    def _add(amount, urgency=Urgency.ROUTINE, criticality=Criticality.ROUTINE, req_id=None, vessel_id="vessel1"):
        counter["n"] += 1
        requisition = Requisition(
            id=req_id or f"REQ-{counter['n']:03d}",
            amount=amount,
            urgency=urgency,
            vessel_id=vessel_id,
            requested_by_id="crew1",
            items=[LineItem(id="item-1", name="Spare part", criticality=criticality)],
        )
        store.add_requisition(requisition)
        return requisition.id

    return _add


@pytest.fixture
def db_path():
    """Create a temporary database file for testing"""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    # Cleanup
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def sqlite_store(db_path):
    """SQLite store on a temp file, seeded like the in-memory store"""
    store = SQLiteProcurementStore(db_path)
    seed_reference_data(store)
    return store
