"""Shared test fixtures: in-memory store and registry, recording fakes for the queue and transport."""

from __future__ import annotations

import pytest

from features.notifications.fanout import Notifier
from features.notifications.registry import InMemoryConnectionRegistry
from features.projects.orchestrator import Orchestrator
from features.projects.store import InMemoryStateStore

from fakes import FakeTransport, RecordingQueue


@pytest.fixture()
def store():
    return InMemoryStateStore()


@pytest.fixture()
def queue():
    return RecordingQueue()


@pytest.fixture()
def registry():
    return InMemoryConnectionRegistry()


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def notifier(registry, transport):
    return Notifier(registry, transport)


@pytest.fixture()
def orchestrator(store, queue, notifier):
    return Orchestrator(store, queue, notifier, clock=lambda: 1_000.0, dedup_window=60)
