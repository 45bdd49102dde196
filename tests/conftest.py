"""Shared pytest fixtures."""
from __future__ import annotations

import uuid

import pytest

from snapsplit.backend.services.bill_repository import InMemoryBillRepository
from snapsplit.backend.services.notifications.bill_notifier import LoggingBillNotifier
from snapsplit.backend.services.sync.reconciliation import ReconciliationEngine
from snapsplit.client.snapshot import take_snapshot
from snapsplit.common.bill_models import Bill, Expense, Member
from snapsplit.common.money import D


class FakeScheduler:
    """Records add_job calls instead of running them."""

    def __init__(self):
        self.jobs = []

    def add_job(self, func, trigger, **kwargs):
        self.jobs.append({"func": func, "trigger": trigger, **kwargs})


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def repo():
    return InMemoryBillRepository()


@pytest.fixture
def notifier():
    return LoggingBillNotifier()


@pytest.fixture
def engine(repo, notifier):
    return ReconciliationEngine(repo, notifier)


@pytest.fixture
def server_bill(repo):
    """Authoritative bill at v1: Alice and Bob share a 60.00 dinner Alice paid."""
    alice = Member(id=str(uuid.uuid4()), name="Alice")
    bob = Member(id=str(uuid.uuid4()), name="Bob")
    dinner = Expense(
        id=str(uuid.uuid4()),
        name="Dinner",
        amount=D("60"),
        paid_by=alice.id,
        participants=[alice.id, bob.id],
    )
    bill = Bill(id=str(uuid.uuid4()), name="Trip", version=1, members=[alice, bob], expenses=[dinner])
    repo.put(bill)
    return bill


@pytest.fixture
def synced_bill():
    """Client working copy already in sync with the server at v3, plus its snapshot."""
    alice = Member(id="local-alice", name="Alice", remote_id="srv-alice")
    bob = Member(id="local-bob", name="Bob", remote_id="srv-bob")
    dinner = Expense(
        id="local-dinner",
        name="Dinner",
        amount=D("60"),
        paid_by=alice.id,
        participants=[alice.id, bob.id],
        remote_id="srv-dinner",
    )
    bill = Bill(
        id="local-bill",
        name="Trip",
        version=3,
        members=[alice, bob],
        expenses=[dinner],
        sync_status="synced",
        remote_id="srv-bill",
    )
    return bill, take_snapshot(bill)
