"""Tests for MergeHistoryTracker and its stores."""

import csv
import dataclasses
import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from scenescout.deduplication import MergeHistoryTracker
from scenescout.deduplication.merge_history import SQLiteHistoryStore
from scenescout.deduplication.models import EventRecord, MergeDecision


def make_decision(primary_id="evt-1", duplicate_ids=("evt-2",), strategy="merge_fields", confidence=0.9):
    primary = EventRecord(id=primary_id, title="Jazz Night")
    duplicates = [EventRecord(id=d, title="Jazz Night") for d in duplicate_ids]
    return MergeDecision(primary=primary, duplicates=duplicates, strategy=strategy, confidence=confidence)


def record(tracker, decision=None, quality_delta=0.1, duration_ms=5.0, actor_id="system", after=None):
    decision = decision or make_decision()
    after = after or decision.primary.model_copy(
        update={"description": "Merged", "merged_from": decision.duplicate_ids}
    )
    return tracker.record_merge(decision, decision.primary, after, actor_id, duration_ms, quality_delta)


def archived_entry(primary_id, duplicate_ids):
    """Exported history for a merge recorded on 2020-01-01."""
    archive = MergeHistoryTracker()
    record(archive, make_decision(primary_id, duplicate_ids))
    exported = json.loads(archive.export_history("json"))
    exported[0]["timestamp"] = "2020-01-01T00:00:00+00:00"
    return exported


class TestRecording:
    """Appending entries."""

    def test_history_ids_increase_monotonically(self, tracker):
        ids = [record(tracker, make_decision(f"evt-{i}", (f"dup-{i}",))) for i in range(5)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        sequences = [e.sequence for e in tracker.store.entries()]
        assert sequences == [1, 2, 3, 4, 5]

    def test_event_history_in_creation_order(self, tracker):
        first = record(tracker, make_decision("evt-1", ("evt-2",)))
        record(tracker, make_decision("evt-5", ("evt-6",)))
        second = record(tracker, make_decision("evt-1", ("evt-3",)))

        history = tracker.get_event_history("evt-1")

        assert [e.history_id for e in history] == [first, second]
        assert [e.history_id for e in tracker.get_event_history("evt-2")] == [first]
        assert tracker.get_event_history("evt-404") == []

    def test_entries_are_immutable(self, tracker):
        record(tracker)
        entry = tracker.store.entries()[0]

        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.quality_delta = 1.0
        with pytest.raises(TypeError):
            entry.after_snapshot["title"] = "Changed"

    def test_snapshots_are_copies(self, tracker):
        decision = make_decision()
        record(tracker, decision)
        decision.confidence = 0.1

        entry = tracker.store.entries()[0]
        assert entry.decision_snapshot["confidence"] == 0.9

    def test_changed_fields(self, tracker):
        record(tracker)
        assert tracker.store.entries()[0].changed_fields == ["description"]

    def test_failures_are_recorded(self, tracker):
        history_id = tracker.record_failure(make_decision(), "system", "boom", duration_ms=2.0)

        entry = tracker.get_event_history("evt-1")[0]
        assert entry.history_id == history_id
        assert not entry.success
        assert entry.error == "boom"
        assert entry.after_snapshot is None
        assert tracker.get_event_history("evt-1", include_failures=False) == []

    def test_consumed_by_and_merged_into(self, tracker):
        record(tracker, make_decision("evt-1", ("evt-2", "evt-3")))
        tracker.record_failure(make_decision("evt-9", ("evt-4",)), "system", "boom")

        assert tracker.consumed_by("evt-2") == "evt-1"
        assert tracker.consumed_by("evt-1") is None
        assert tracker.consumed_by("evt-4") is None
        assert tracker.merged_into("evt-1") == {"evt-2", "evt-3"}


class TestAnalytics:
    """Analytics and anomaly detection."""

    def test_analytics(self, tracker):
        record(tracker, make_decision(strategy="merge_fields"), quality_delta=0.2, duration_ms=10.0)
        record(tracker, make_decision("evt-5", ("evt-6",), strategy="keep_primary"), quality_delta=0.0,
               duration_ms=20.0)
        tracker.record_failure(make_decision("evt-7", ("evt-8",)), "system", "boom")

        analytics = tracker.get_analytics()

        assert analytics["merge_count"] == 2
        assert analytics["failed_count"] == 1
        assert analytics["avg_quality_delta"] == pytest.approx(0.1)
        assert analytics["avg_duration"] == pytest.approx(15.0)
        assert analytics["strategy_breakdown"]["merge_fields"]["count"] == 1
        assert analytics["strategy_breakdown"]["merge_fields"]["attempts"] == 2
        assert analytics["strategy_breakdown"]["keep_primary"]["success_rate"] == 1.0
        assert analytics["field_impact"] == {"description": 2}
        assert sum(analytics["merge_frequency"].values()) == 2

    def test_analytics_filters(self, tracker):
        record(tracker, make_decision(strategy="merge_fields"))
        record(tracker, make_decision("evt-5", ("evt-6",), strategy="keep_primary"))

        assert tracker.get_analytics(strategy="keep_primary")["merge_count"] == 1

        tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
        assert tracker.get_analytics(date_range=(tomorrow, None))["merge_count"] == 0
        assert tracker.get_analytics(date_range=(None, tomorrow))["merge_count"] == 2

    def test_analytics_on_empty_history(self, tracker):
        analytics = tracker.get_analytics()
        assert analytics["merge_count"] == 0
        assert analytics["avg_quality_delta"] == 0.0

    def test_quality_issues(self):
        tracker = MergeHistoryTracker(slow_merge_ms=100.0, low_confidence_threshold=0.6)
        record(tracker, make_decision("evt-1", ("evt-2",)), quality_delta=-0.2)
        record(tracker, make_decision("evt-3", ("evt-4",)), duration_ms=500.0)
        record(tracker, make_decision("evt-5", ("evt-6",), confidence=0.4))
        tracker.record_failure(make_decision("evt-7", ("evt-8",)), "system", "boom")

        types = [issue["type"] for issue in tracker.identify_quality_issues()]

        assert types.count("quality_degradation") == 1
        assert types.count("slow_merge") == 1
        assert types.count("low_confidence") == 1
        assert types.count("failed_merge") == 1

    def test_ineffective_strategy(self, tracker):
        for i in range(3):
            record(tracker, make_decision(f"evt-{i}", (f"dup-{i}",), strategy="keep_primary"), quality_delta=-0.05)

        issues = tracker.identify_quality_issues()

        assert any(issue["type"] == "strategy_ineffectiveness" for issue in issues)

    def test_audit_report(self, tracker):
        record(tracker, quality_delta=-0.1)

        report = tracker.generate_audit_report()

        assert report["summary"]["merge_count"] == 1
        assert report["statistics"]["total_entries"] == 1
        assert report["anomalies"][0]["type"] == "quality_degradation"
        assert report["recommendations"]
        assert report["text"].startswith("Merge Audit Report")

    def test_statistics(self, tracker):
        record(tracker, actor_id="alice")
        record(tracker, make_decision("evt-5", ("evt-6",)), actor_id="batch:batch")

        stats = tracker.get_statistics()

        assert stats["total_entries"] == 2
        assert stats["unique_events"] == 4
        assert stats["actors"] == {"alice": 1, "batch:batch": 1}
        assert stats["store"] == "memory"


class TestExportImport:
    """Export, import and clearing."""

    def test_json_export_and_import(self, tracker):
        record(tracker)
        tracker.record_failure(make_decision("evt-7", ("evt-8",)), "system", "boom")
        exported = tracker.export_history("json")

        restored = MergeHistoryTracker()
        assert restored.import_history(exported) == 2

        original = [e.to_dict() for e in tracker.store.entries()]
        copied = [e.to_dict() for e in restored.store.entries()]
        assert copied == original

    def test_import_skips_known_entries(self, tracker):
        record(tracker)
        exported = tracker.export_history("json")

        assert tracker.import_history(exported) == 0
        assert len(tracker.store.entries()) == 1

    def test_new_entries_after_import_do_not_collide(self):
        source = MergeHistoryTracker()
        record(source)
        record(source, make_decision("evt-5", ("evt-6",)))

        target = MergeHistoryTracker()
        record(target, make_decision("evt-9", ("evt-10",)))
        target.import_history(json.loads(source.export_history("json")))
        new_id = record(target, make_decision("evt-11", ("evt-12",)))

        ids = [e.history_id for e in target.store.entries()]
        assert len(ids) == len(set(ids)) == 4
        assert ids[-1] == new_id

    def test_older_imported_entry_sorts_first(self, tracker):
        live = record(tracker, make_decision("evt-1", ("evt-2",)))
        archived = archived_entry("evt-1", ("evt-3",))

        assert tracker.import_history(archived) == 1

        history = tracker.get_event_history("evt-1")
        assert [e.timestamp.year for e in history] == [2020, datetime.now(timezone.utc).year]
        assert history[1].history_id == live
        assert tracker.store.entries()[0].timestamp.year == 2020

    def test_csv_export(self, tracker):
        record(tracker, make_decision("evt-1", ("evt-2", "evt-3")))

        rows = list(csv.DictReader(io.StringIO(tracker.export_history("csv"))))

        assert len(rows) == 1
        assert rows[0]["primary_event_id"] == "evt-1"
        assert rows[0]["duplicate_event_ids"] == "evt-2;evt-3"

    def test_unsupported_export_format(self, tracker):
        with pytest.raises(ValueError):
            tracker.export_history("xml")

    def test_clear_history(self, tracker):
        record(tracker)
        record(tracker, make_decision("evt-5", ("evt-6",)))

        past = datetime.now(timezone.utc) - timedelta(days=1)
        assert tracker.clear_history(older_than=past) == 0
        assert tracker.clear_history() == 2
        assert tracker.store.entries() == []


class TestSQLiteHistoryStore:
    """SQLite-backed history."""

    def test_round_trip(self, tmp_path):
        store = SQLiteHistoryStore(str(tmp_path / "history.db"))
        tracker = MergeHistoryTracker(store=store)
        history_id = record(tracker, make_decision("evt-1", ("evt-2", "evt-3")))

        entries = tracker.get_event_history("evt-3")

        assert [e.history_id for e in entries] == [history_id]
        assert entries[0].duplicate_event_ids == ("evt-2", "evt-3")
        assert entries[0].after_snapshot["description"] == "Merged"
        assert tracker.get_statistics()["store"] == "sqlite"
        store.close()

    def test_history_survives_reopening(self, tmp_path):
        path = str(tmp_path / "history.db")
        store = SQLiteHistoryStore(path)
        first = record(MergeHistoryTracker(store=store))
        store.close()

        reopened = SQLiteHistoryStore(path)
        tracker = MergeHistoryTracker(store=reopened)
        second = record(tracker, make_decision("evt-5", ("evt-6",)))

        ids = [e.history_id for e in tracker.store.entries()]
        assert ids == [first, second]
        assert tracker.consumed_by("evt-2") == "evt-1"
        reopened.close()

    def test_clear_with_cutoff(self, tmp_path):
        store = SQLiteHistoryStore(str(tmp_path / "history.db"))
        tracker = MergeHistoryTracker(store=store)
        record(tracker)

        assert tracker.clear_history(older_than=datetime.now(timezone.utc) + timedelta(seconds=5)) == 1
        assert tracker.get_event_history("evt-1") == []
        store.close()

    def test_older_imported_entry_sorts_first(self, tmp_path):
        store = SQLiteHistoryStore(str(tmp_path / "history.db"))
        tracker = MergeHistoryTracker(store=store)
        live = record(tracker, make_decision("evt-1", ("evt-2",)))

        tracker.import_history(archived_entry("evt-1", ("evt-3",)))

        history = tracker.get_event_history("evt-1")
        assert history[0].timestamp == datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert history[1].history_id == live
        store.close()

    def test_in_memory_database(self):
        tracker = MergeHistoryTracker(store=SQLiteHistoryStore(":memory:"))
        record(tracker)
        assert len(tracker.store.entries()) == 1
