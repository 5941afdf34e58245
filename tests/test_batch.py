"""Tests for batch deduplication and clustering."""

import pytest

from scenescout.deduplication import ConfigurationError, DeduplicationSystem
from scenescout.deduplication.performance import UnionFind


@pytest.fixture
def jazz_copies(make_event):
    """Three listings of the same night plus an unrelated event."""
    return [
        make_event("evt-a", ingested_at="2024-06-03T08:00:00", source="meetup"),
        make_event("evt-b", ingested_at="2024-06-01T08:00:00", description="Live jazz with the house trio"),
        make_event("evt-c", ingested_at="2024-06-02T08:00:00", source="facebook", tags=["jazz"]),
        make_event("evt-d", title="Farmers Market", venue_name="Union Square", start_time="2024-06-15T09:00:00"),
    ]


@pytest.fixture
def band_pair(make_event):
    """Free and paid listings two days apart, scoring between the thresholds."""
    return [
        make_event("evt-1", is_free=True),
        make_event("evt-2", price_min=25, start_time="2024-06-16T20:00:00", ingested_at="2024-06-02T08:00:00"),
    ]


class TestBatchProcessing:
    """Clustering and automatic merging."""

    def test_cluster_is_merged_into_earliest_ingested(self, system, jazz_copies):
        result = system.batch_process_events(jazz_copies)

        assert result.processed_count == 4
        assert result.duplicates_found == 2
        assert result.merges_completed == 1
        assert result.clusters == [["evt-a", "evt-b", "evt-c"]]
        assert result.errors == []

        merged = result.merged_events[0]
        assert merged.id == "evt-b"
        assert sorted(merged.merged_from) == ["evt-a", "evt-c"]
        assert merged.description == "Live jazz with the house trio"
        assert merged.tags == ["jazz"]

    def test_batch_merges_are_audited(self, system, jazz_copies):
        system.batch_process_events(jazz_copies)

        history = system.get_merge_history("evt-a")

        assert len(history) == 1
        assert history[0].actor_id == "batch:batch"
        assert history[0].primary_event_id == "evt-b"

    def test_full_scan_compares_every_pair(self, system, jazz_copies):
        result = system.batch_process_events(jazz_copies, mode="full_scan")

        assert result.performance["pairs_compared"] == 6
        assert result.performance["mode"] == "full_scan"
        assert result.merges_completed == 1

    def test_batch_mode_skips_pairs_outside_date_window(self, system, make_event):
        events = [
            make_event("evt-1"),
            make_event("evt-2", start_time="2024-09-01T20:00:00"),
            make_event("evt-3", start_time="TBA"),
        ]

        result = system.batch_process_events(events)

        assert result.performance["pairs_compared"] == 0
        assert result.merges_completed == 0

    @pytest.mark.parametrize("mode", ["batch", "full_scan"])
    def test_chained_listings_only_merge_direct_matches(self, system, make_event, mode):
        events = [
            make_event("evt-1", start_time="2024-06-10T20:00:00"),
            make_event("evt-2", start_time="2024-06-12T20:00:00"),
            make_event("evt-3", start_time="2024-06-14T20:00:00"),
        ]
        assert system.find_matches(events[0], [events[2]]) == []

        result = system.batch_process_events(events, mode=mode)

        assert result.clusters == [["evt-1", "evt-2"]]
        assert result.duplicates_found == 1
        assert result.merges_completed == 1
        merged = result.merged_events[0]
        assert merged.id == "evt-1"
        assert sorted(merged.merged_from) == ["evt-2"]

    def test_unmatched_members_form_their_own_clusters(self, system, make_event):
        events = [
            make_event("evt-1", start_time="2024-06-10T20:00:00", ingested_at="2024-06-01T08:00:00"),
            make_event("evt-2", start_time="2024-06-12T20:00:00", ingested_at="2024-06-02T08:00:00"),
            make_event("evt-3", start_time="2024-06-14T20:00:00", ingested_at="2024-06-03T08:00:00"),
            make_event("evt-4", start_time="2024-06-15T20:00:00", ingested_at="2024-06-04T08:00:00"),
        ]

        result = system.batch_process_events(events, mode="full_scan")

        assert result.clusters == [["evt-1", "evt-2"], ["evt-3", "evt-4"]]
        assert [e.id for e in result.merged_events] == ["evt-1", "evt-3"]
        assert system.get_merge_history("evt-3")[0].duplicate_event_ids == ("evt-4",)

    def test_unknown_mode(self, system, jazz_copies):
        with pytest.raises(ConfigurationError):
            system.batch_process_events(jazz_copies, mode="sample")

    def test_malformed_and_repeated_records_are_reported(self, system, jazz_copies):
        events = jazz_copies + [{"title": "No id"}, jazz_copies[0]]

        result = system.batch_process_events(events)

        assert result.processed_count == 4
        assert result.merges_completed == 1
        assert [error["index"] for error in result.errors] == [4, 5]
        assert result.errors[1]["event_id"] == "evt-a"

    def test_empty_batch(self, system):
        result = system.batch_process_events([])

        assert result.processed_count == 0
        assert result.clusters == []


class TestBatchPolicy:
    """Auto-merge policy for clusters."""

    def test_review_band_is_queued_by_default(self, system, band_pair):
        result = system.batch_process_events(band_pair)

        assert result.merges_completed == 0
        assert len(result.review_queue) == 1
        decision = result.review_queue[0]
        assert decision.primary.id == "evt-1"
        assert 0.80 <= decision.confidence < 0.95

    def test_review_band_auto_merges_with_warning_when_allowed(self, band_pair):
        system = DeduplicationSystem({"quality": {"review_band_policy": "auto_merge"}})

        result = system.batch_process_events(band_pair)

        assert result.merges_completed == 1
        assert result.review_queue == []
        assert any("below the auto-merge threshold" in w for w in result.warnings)

    def test_manual_review_required_queues_everything(self, jazz_copies):
        system = DeduplicationSystem({"quality": {"require_manual_review": True}})

        result = system.batch_process_events(jazz_copies)

        assert result.merges_completed == 0
        assert [d.primary.id for d in result.review_queue] == ["evt-b"]

    def test_parallel_scoring_matches_sequential(self, make_event):
        events = [make_event(f"evt-{i}", ingested_at=f"2024-06-{i + 1:02d}T08:00:00") for i in range(4)]
        events += [
            make_event(f"show-{i}", title="Comedy Hour", venue_name="Laugh Factory",
                       start_time="2024-06-20T21:00:00", ingested_at=f"2024-06-{i + 1:02d}T08:00:00")
            for i in range(3)
        ]
        sequential = DeduplicationSystem({"performance": {"batch_size": 2}})
        parallel = DeduplicationSystem({"performance": {"batch_size": 2, "parallel_processing": True}})

        seq_result = sequential.batch_process_events(events)
        par_result = parallel.batch_process_events(events)

        assert par_result.clusters == seq_result.clusters
        assert [e.id for e in par_result.merged_events] == [e.id for e in seq_result.merged_events]
        assert par_result.performance["parallel"] is True
        assert par_result.merges_completed == 2


class TestUnionFind:
    """Disjoint set clustering."""

    def test_groups(self):
        union_find = UnionFind(5)
        union_find.union(0, 1)
        union_find.union(2, 3)
        union_find.union(1, 3)

        assert sorted(union_find.groups()) == [[0, 1, 2, 3], [4]]

    def test_union_is_idempotent(self):
        union_find = UnionFind(3)
        union_find.union(0, 1)
        union_find.union(1, 0)

        assert union_find.find(0) == union_find.find(1)
        assert union_find.find(2) == 2
