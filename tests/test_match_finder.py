"""Tests for MatchFinder."""

import pytest

from scenescout.deduplication import DedupConfig, FingerprintEngine, MatchFinder


def finder_for(**config):
    cfg = DedupConfig(**config)
    return MatchFinder(FingerprintEngine(cfg), cfg)


class TestFindMatches:
    """Candidate scoring, filtering and ranking."""

    def test_jazz_night_listings_match(self, finder, jazz_pair):
        original, listing = jazz_pair

        matches = finder.find_matches(original, [listing])

        assert len(matches) == 1
        match = matches[0]
        assert match.target_id == "evt-1"
        assert match.matched_id == "evt-2"
        assert match.confidence >= 0.80
        assert "Same venue" in match.reasons
        assert "Same date" in match.reasons
        assert match.risk_factors == []

    def test_events_45_days_apart_do_not_match(self, finder, make_event):
        target = make_event("evt-1")
        later = make_event("evt-2", start_time="2024-07-29T20:00:00")

        assert finder.find_matches(target, [later]) == []

    def test_date_is_not_decisive_when_not_critical(self, make_event):
        finder = finder_for(matching={"critical_dimensions": ["title", "venue"]})
        target = make_event("evt-1")
        later = make_event("evt-2", start_time="2024-07-29T20:00:00")

        matches = finder.find_matches(target, [later])

        assert [m.matched_id for m in matches] == ["evt-2"]
        assert matches[0].similarity.date == 0.0

    def test_date_floor_applies_only_to_critical_dimensions(self, finder, make_event):
        target = make_event("evt-1")
        five_days_later = make_event("evt-2", start_time="2024-06-19T20:00:00")

        assert finder.find_matches(target, [five_days_later]) == []

        relaxed = finder_for(matching={"critical_dimensions": ["title", "venue"]})
        matches = relaxed.find_matches(target, [five_days_later])
        assert len(matches) == 1
        assert matches[0].similarity.date == pytest.approx(1 - 5 / 30)

    def test_never_matches_itself(self, finder, make_event):
        target = make_event("evt-1")
        assert finder.find_matches(target, [target, make_event("evt-1")]) == []

    def test_accepts_plain_dicts(self, finder):
        target = {"id": "evt-1", "title": "Jazz Night", "venue_name": "Blue Note",
                  "start_time": "2024-06-14T20:00:00"}
        candidate = dict(target, id="evt-2")

        matches = finder.find_matches(target, [candidate])

        assert [m.matched_id for m in matches] == ["evt-2"]
        assert matches[0].event.id == "evt-2"

    def test_unfingerprintable_target_returns_empty(self, finder, make_event):
        assert finder.find_matches({"title": "No id"}, [make_event("evt-2")]) == []
        assert finder.stats["fingerprint_failures"] == 1

    def test_malformed_candidates_are_skipped(self, finder, make_event):
        matches = finder.find_matches(make_event("evt-1"), [{"title": "No id"}, make_event("evt-2")])
        assert [m.matched_id for m in matches] == ["evt-2"]

    def test_empty_pool(self, finder, make_event):
        assert finder.find_matches(make_event("evt-1"), []) == []


class TestRanking:
    """Ordering of qualifying matches."""

    def test_higher_confidence_first(self, finder, make_event):
        target = make_event("evt-1", price_min=25)
        same_tier = make_event("evt-2", price_min=30)
        other_tier = make_event("evt-3", price_min=60, ingested_at="2024-05-01T00:00:00")

        matches = finder.find_matches(target, [other_tier, same_tier])

        assert [m.matched_id for m in matches] == ["evt-2", "evt-3"]
        assert matches[0].confidence > matches[1].confidence

    def test_ties_broken_by_earlier_ingestion(self, finder, make_event):
        target = make_event("evt-0", ingested_at="2024-06-05T00:00:00")
        later = make_event("evt-2", ingested_at="2024-06-02T09:00:00")
        earlier = make_event("evt-3", ingested_at="2024-05-30T09:00:00")

        matches = finder.find_matches(target, [later, earlier])

        assert matches[0].confidence == matches[1].confidence
        assert [m.matched_id for m in matches] == ["evt-3", "evt-2"]

    def test_ties_broken_by_venue_before_ingestion(self, make_event):
        finder = finder_for(
            weights={"title": 0.5, "venue": 0.0, "location": 0.0, "date": 0.4, "semantic": 0.1},
            matching={"critical_dimensions": ["title", "date"]},
        )
        target = make_event("evt-0")
        same_venue = make_event("evt-2", ingested_at="2024-06-03T00:00:00")
        other_venue = make_event("evt-3", venue_name="Village Vanguard", ingested_at="2024-05-01T00:00:00")

        matches = finder.find_matches(target, [other_venue, same_venue])

        assert matches[0].confidence == matches[1].confidence
        assert [m.matched_id for m in matches] == ["evt-2", "evt-3"]

    def test_ranking_is_deterministic(self, finder, make_event):
        target = make_event("evt-0")
        pool = [make_event(f"evt-{i}", ingested_at="2024-06-01T10:00:00") for i in range(1, 6)]

        first = [m.matched_id for m in finder.find_matches(target, pool)]
        second = [m.matched_id for m in finder.find_matches(target, list(reversed(pool)))]

        assert first == second == ["evt-1", "evt-2", "evt-3", "evt-4", "evt-5"]


class TestThresholds:
    """Threshold and candidate-cap behaviour."""

    def test_raising_threshold_never_adds_matches(self, make_event):
        target = make_event("evt-0", price_min=25)
        pool = [
            make_event("evt-1", price_min=25),
            make_event("evt-2", title="Jazz Nite", price_min=30),
            make_event("evt-3", venue_name="Blue Note Jazz Club", price_min=70),
            make_event("evt-4", start_time="2024-06-15T20:00:00"),
            make_event("evt-5", title="Late Jazz Night Session"),
        ]

        previous = None
        for threshold in (0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0):
            finder = finder_for(
                thresholds={"overall": threshold},
                quality={"auto_merge_threshold": 1.0},
            )
            found = {m.matched_id for m in finder.find_matches(target, pool)}
            if previous is not None:
                assert found <= previous
            previous = found

    def test_max_candidates_keeps_nearest_by_date(self, make_event):
        finder = finder_for(performance={"max_candidates": 2})
        target = make_event("evt-0")
        pool = [
            make_event(f"evt-{i}", start_time=f"2024-06-14T20:{i * 10:02d}:00")
            for i in range(5)
            if i
        ] + [make_event("evt-9", start_time="2024-06-14T20:05:00")]

        matches = finder.find_matches(target, pool)

        assert {m.matched_id for m in matches} == {"evt-9", "evt-1"}
        assert finder.stats["candidates_prefiltered"] == 3

    def test_block_by_city(self, make_event):
        finder = finder_for(matching={"block_by_city": True})
        target = make_event("evt-0")

        matches = finder.find_matches(target, [make_event("evt-1", city="Boston"), make_event("evt-2")])

        assert [m.matched_id for m in matches] == ["evt-2"]


class TestRiskFactors:
    """Risk signals attached to matches."""

    def test_different_time_windows_on_same_date(self, finder, make_event):
        target = make_event("evt-0")
        late_show = make_event("evt-1", start_time="2024-06-14T23:30:00")

        matches = finder.find_matches(target, [late_show])

        assert len(matches) == 1
        assert any("Different time windows" in r for r in matches[0].risk_factors)

    def test_price_category_and_city_risks(self, finder, make_event):
        a = make_event("evt-0", price_min=10, category="Music", city="New York")
        b = make_event("evt-1", price_min=90, category="Comedy", city="Brooklyn")

        risks = finder.risk_factors(a, b)

        assert any(r.startswith("Significant price difference") for r in risks)
        assert any(r.startswith("Different categories") for r in risks)
        assert any(r.startswith("Different cities") for r in risks)

    def test_no_risks_for_consistent_events(self, finder, make_event):
        a = make_event("evt-0", price_min=20, category="Music")
        b = make_event("evt-1", start_time="2024-06-14T21:00:00", price_min=25, category="music")
        assert finder.risk_factors(a, b) == []
