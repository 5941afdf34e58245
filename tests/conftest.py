"""Shared fixtures for the deduplication test suite."""

import pytest

from scenescout.deduplication import (
    ConflictResolver,
    DedupConfig,
    DeduplicationSystem,
    EventMerger,
    EventRecord,
    FingerprintEngine,
    MatchFinder,
    MergeHistoryTracker,
    SourceRegistry,
)


@pytest.fixture
def make_event():
    """Factory for event records sharing a sensible baseline."""

    def _make(event_id, **overrides):
        data = {
            "id": event_id,
            "title": "Jazz Night",
            "venue_name": "Blue Note",
            "city": "New York",
            "start_time": "2024-06-14T20:00:00",
            "source": "eventbrite",
            "ingested_at": "2024-06-01T10:00:00",
        }
        data.update(overrides)
        return EventRecord(**data)

    return _make


@pytest.fixture
def jazz_pair(make_event):
    """The same free jazz night listed by two providers."""
    original = make_event("evt-1", title="Jazz Night", is_free=True)
    listing = make_event(
        "evt-2",
        title="Jazz night!!",
        is_free=True,
        source="meetup",
        ingested_at="2024-06-02T09:00:00",
    )
    return original, listing


@pytest.fixture
def config():
    return DedupConfig()


@pytest.fixture
def engine(config):
    return FingerprintEngine(config)


@pytest.fixture
def finder(engine, config):
    return MatchFinder(engine, config)


@pytest.fixture
def registry():
    return SourceRegistry()


@pytest.fixture
def resolver(registry):
    return ConflictResolver(registry)


@pytest.fixture
def tracker():
    return MergeHistoryTracker()


@pytest.fixture
def merger(resolver, tracker, config):
    return EventMerger(resolver, tracker, config)


@pytest.fixture
def system():
    return DeduplicationSystem()
