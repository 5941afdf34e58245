"""Tests for the DeduplicationSystem facade."""

from unittest import mock

import pytest

from scenescout.deduplication import (
    ConfigurationError,
    DeduplicationSystem,
    MergeHistoryTracker,
    MergeStatus,
    SQLiteHistoryStore,
)


class TestCheckForDuplicates:
    """Duplicate checks."""

    def test_clear_duplicate(self, system, jazz_pair):
        target, existing = jazz_pair

        result = system.check_for_duplicates(target, [existing])

        assert result.is_duplicate
        assert result.confidence >= 0.95
        assert result.primary_event_id == "evt-2"
        assert result.duplicate_event_ids == ["evt-2"]
        assert not result.needs_review
        assert result.recommendations[0].startswith("Merge into evt-2")

    def test_no_duplicates(self, system, make_event):
        result = system.check_for_duplicates(
            make_event("evt-1"), [make_event("evt-2", title="Farmers Market", venue_name="Union Square")]
        )

        assert not result.is_duplicate
        assert result.confidence == 0.0
        assert result.matches == []

    def test_review_band_needs_review(self, system, make_event):
        target = make_event("evt-1", is_free=True)
        candidate = make_event("evt-2", price_min=25, start_time="2024-06-16T20:00:00")

        result = system.check_for_duplicates(target, [candidate])

        assert result.is_duplicate
        assert 0.80 <= result.confidence < 0.95
        assert result.needs_review

    def test_risk_factors_need_review(self, system, make_event):
        target = make_event("evt-1", category="Music")
        candidate = make_event("evt-2", category="Comedy")

        result = system.check_for_duplicates(target, [candidate])

        assert result.needs_review
        assert any("Different categories" in r for r in result.recommendations)

    def test_require_manual_review(self, jazz_pair):
        system = DeduplicationSystem({"quality": {"require_manual_review": True}})

        result = system.check_for_duplicates(jazz_pair[0], [jazz_pair[1]])

        assert result.needs_review


class TestExecuteMerge:
    """Merge execution through the facade."""

    def test_successful_merge_is_recorded(self, system, jazz_pair):
        decision = system.create_merge_decision(jazz_pair[0], [jazz_pair[1]], "merge_fields")

        result = system.execute_merge(decision, actor_id="ingest-worker")

        assert result.success
        history = system.get_merge_history("evt-2")
        assert [e.history_id for e in history] == [result.history_id]
        assert system.get_analytics()["merge_count"] == 1

    def test_unexpected_error_becomes_failed_result(self, system, jazz_pair):
        failures = []
        system.add_listener("merge_failed", failures.append)
        decision = system.create_merge_decision(jazz_pair[0], [jazz_pair[1]])

        with mock.patch.object(system.merger, "build_merged_event", side_effect=RuntimeError("disk on fire")):
            result = system.execute_merge(decision)

        assert not result.success
        assert "disk on fire" in result.error
        assert result.merged_event is None
        assert system.stats["unexpected_errors"] == 1

        history = system.get_merge_history("evt-1")
        assert len(history) == 1
        assert not history[0].success
        assert history[0].history_id == result.history_id

        assert len(failures) == 1
        assert failures[0]["decision_id"] == decision.decision_id

    def test_refused_merge_is_recorded_as_failure(self, system, make_event):
        primary = make_event("evt-1")
        decision = system.create_merge_decision(primary, [primary])

        result = system.execute_merge(decision)

        assert not result.success
        assert decision.status == MergeStatus.REJECTED
        assert system.history.get_statistics()["failed_merges"] == 1

    def test_sqlite_backed_history(self, jazz_pair):
        system = DeduplicationSystem(history=MergeHistoryTracker(store=SQLiteHistoryStore(":memory:")))

        result = system.execute_merge(system.create_merge_decision(jazz_pair[0], [jazz_pair[1]]))

        assert result.success
        assert system.history.get_statistics()["store"] == "sqlite"
        assert len(system.get_merge_history("evt-1")) == 1


class TestListeners:
    """Lifecycle callbacks."""

    def test_events_are_emitted(self, system, make_event, jazz_pair):
        received = []
        for name in ("duplicates_found", "merge_executed", "merge_blocked"):
            system.add_listener(name, lambda payload, name=name: received.append((name, payload)))

        system.check_for_duplicates(jazz_pair[0], [jazz_pair[1]])
        system.execute_merge(system.create_merge_decision(jazz_pair[0], [jazz_pair[1]]))
        system.create_merge_decision(
            make_event("evt-5", tags=["a"]), [make_event("evt-6", tags=["b"])],
            field_strategies={"tags": "manual_review"},
        )

        names = [name for name, _ in received]
        assert names == ["duplicates_found", "merge_executed", "merge_blocked"]
        assert received[1][1]["merged_event_id"] == "evt-1"
        assert received[2][1]["fields"] == ["tags"]

    def test_failing_listener_does_not_break_merge(self, system, jazz_pair):
        def broken(payload):
            raise RuntimeError("listener bug")

        system.add_listener("merge_executed", broken)

        result = system.execute_merge(system.create_merge_decision(jazz_pair[0], [jazz_pair[1]]))

        assert result.success

    def test_remove_listener(self, system, jazz_pair):
        received = []
        system.add_listener("duplicates_found", received.append)
        system.remove_listener("duplicates_found", received.append)

        system.check_for_duplicates(jazz_pair[0], [jazz_pair[1]])

        assert received == []

    def test_unknown_listener_event(self, system):
        with pytest.raises(ConfigurationError):
            system.add_listener("merge_exploded", print)


class TestConfiguration:
    """Construction and runtime configuration."""

    def test_invalid_configuration_fails_at_construction(self):
        with pytest.raises(ConfigurationError):
            DeduplicationSystem({"weights": {"title": 0.9}})

    def test_update_configuration(self, system):
        system.update_configuration({"thresholds": {"overall": 0.9}})

        assert system.config.thresholds.overall == 0.9
        assert system.finder.config.thresholds.overall == 0.9
        assert system.merger.config is system.config

    def test_invalid_update_keeps_current_configuration(self, system):
        with pytest.raises(ConfigurationError):
            system.update_configuration({"weights": {"title": 0.9}})

        assert system.config.weights.title == 0.35

    def test_update_clears_cache(self, system, jazz_pair):
        system.find_matches(jazz_pair[0], [jazz_pair[1]])
        assert len(system.cache) > 0

        system.update_configuration({"algorithms": {"string_matching": "levenshtein"}})

        assert len(system.cache) == 0

    def test_register_data_source(self, system, jazz_pair):
        system.find_matches(jazz_pair[0], [jazz_pair[1]])

        source = system.register_data_source("local_blog", 0.4)

        assert source.reliability == 0.4
        assert system.resolver.registry.get("local_blog").reliability == 0.4
        assert len(system.cache) == 0

    def test_register_invalid_data_source(self, system):
        with pytest.raises(ConfigurationError):
            system.register_data_source("local_blog", 1.4)


class TestHealthAndMetrics:
    """Health checks and performance metrics."""

    def test_healthy_system(self, system):
        health = system.health_check()

        assert health["status"] == "ok"
        assert set(health["components"]) == {"fingerprint_engine", "conflict_resolver", "cache", "merge_history"}

    def test_high_manual_review_rate_warns(self, system, make_event):
        system.create_merge_decision(
            make_event("evt-1"), [make_event("evt-2", title="Jazz Nite")], strategy="manual_review"
        )

        health = system.health_check()

        assert health["status"] == "warning"
        assert health["components"]["conflict_resolver"]["status"] == "warning"
        assert health["recommendations"]

    def test_failing_component_reports_error(self, system):
        with mock.patch.object(system.history, "get_statistics", side_effect=RuntimeError("db gone")):
            health = system.health_check()

        assert health["status"] == "error"
        assert health["components"]["merge_history"]["error"] == "db gone"

    def test_performance_metrics(self, system, jazz_pair):
        system.check_for_duplicates(jazz_pair[0], [jazz_pair[1]])

        metrics = system.get_performance_metrics()

        assert metrics["duplicate_checks"] == 1
        assert metrics["avg_check_ms"] >= 0.0
        for key in ("cache", "fingerprint_engine", "match_finder", "merger", "batch", "conflict_resolution"):
            assert key in metrics
        assert metrics["match_finder"]["searches"] == 1

    def test_audit_report_and_export(self, system, jazz_pair):
        system.execute_merge(system.create_merge_decision(jazz_pair[0], [jazz_pair[1]]))

        report = system.generate_audit_report()
        exported = system.export_history("json")

        restored = DeduplicationSystem()
        assert restored.import_history(exported) == 1
        assert report["summary"]["merge_count"] == 1
