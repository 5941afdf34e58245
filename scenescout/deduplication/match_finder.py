"""
Match Finder

Scores a target event against a pool of candidates and returns the ranked
subset that plausibly describes the same real-world event.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import DedupConfig
from .errors import DeduplicationError
from .fingerprint import FingerprintEngine, UNKNOWN, coerce_event
from .models import EventRecord, Fingerprint, Match, SimilarityScore

logger = logging.getLogger(__name__)

# Risk factor limits
TIME_WINDOW_HOURS = 2.0
PRICE_DIFFERENCE_LIMIT = 50.0

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

EventLike = Union[EventRecord, Mapping[str, Any]]


class MatchFinder:
    """
    Finds duplicate candidates for an event.

    A candidate qualifies when its overall score reaches the configured
    ``overall`` threshold and every critical dimension reaches its own
    threshold. Results are ranked by overall score, then venue similarity,
    then the earlier ingestion timestamp.
    """

    def __init__(self, engine: Optional[FingerprintEngine] = None,
                 config: Optional[DedupConfig] = None):
        self.engine = engine or FingerprintEngine(config)
        self.config = config or self.engine.config

        self.stats = {
            "searches": 0,
            "candidates_considered": 0,
            "candidates_prefiltered": 0,
            "candidates_scored": 0,
            "matches_found": 0,
            "fingerprint_failures": 0,
        }

    def find_matches(self, target: EventLike, candidates: Iterable[EventLike]) -> List[Match]:
        """Return qualifying matches for ``target``, best first.

        Args:
            target: Event to look up
            candidates: Pool of events to compare against

        Returns:
            Ranked matches; empty when the target cannot be fingerprinted
        """
        self.stats["searches"] += 1

        try:
            target_record = coerce_event(target)
            target_fp = self.engine.generate_fingerprint(target_record)
        except DeduplicationError as e:
            self.stats["fingerprint_failures"] += 1
            logger.warning(f"Cannot fingerprint target event, no matches returned: {e}")
            return []

        pool = self._fingerprint_pool(target_record, candidates)
        self.stats["candidates_considered"] += len(pool)
        pool = self.prefilter(target_fp, pool)

        matches = []
        for record, fingerprint in pool:
            self.stats["candidates_scored"] += 1
            score = self.engine.calculate_similarity(target_fp, fingerprint)
            if not self.qualifies(score):
                continue
            matches.append(self._build_match(target_record, target_fp, record, fingerprint, score))

        matches.sort(key=self._rank_key)
        self.stats["matches_found"] += len(matches)

        if matches:
            logger.debug(
                f"Found {len(matches)} matches for {target_record.id} "
                f"(best {matches[0].confidence:.3f})"
            )
        return matches

    def _fingerprint_pool(self, target: EventRecord,
                          candidates: Iterable[EventLike]) -> List[Tuple[EventRecord, Fingerprint]]:
        pool = []
        for candidate in candidates:
            try:
                record = coerce_event(candidate)
            except DeduplicationError as e:
                self.stats["fingerprint_failures"] += 1
                logger.warning(f"Skipping malformed candidate: {e}")
                continue
            if record.id == target.id:
                continue
            pool.append((record, self.engine.generate_fingerprint(record)))
        return pool

    def prefilter(self, target_fp: Fingerprint,
                  pool: Sequence[Tuple[EventRecord, Fingerprint]]) -> List[Tuple[EventRecord, Fingerprint]]:
        """Cheap blocking pass before pairwise scoring.

        When date is a critical dimension with a positive floor, drops
        candidates further away in time than the date horizon (their date
        score is 0 and can never clear the floor). Optionally blocks on city,
        then keeps the ``max_candidates`` nearest by date. Unknown dates are
        always kept.
        """
        matching = self.config.matching
        horizon_seconds = matching.date_horizon_days * 86400.0
        date_window = "date" in matching.critical_dimensions and self.config.thresholds.date > 0

        kept = []
        for record, fp in pool:
            if date_window and target_fp.start and fp.start:
                if abs((fp.start - target_fp.start).total_seconds()) > horizon_seconds:
                    continue
            if matching.block_by_city and target_fp.city and fp.city and target_fp.city != fp.city:
                continue
            kept.append((record, fp))

        limit = self.config.performance.max_candidates
        if len(kept) > limit:
            kept.sort(key=lambda item: self._date_distance(target_fp, item[1]))
            kept = kept[:limit]

        self.stats["candidates_prefiltered"] += len(pool) - len(kept)
        return kept

    @staticmethod
    def _date_distance(target_fp: Fingerprint, fp: Fingerprint) -> Tuple[float, str]:
        if target_fp.start and fp.start:
            return (abs((fp.start - target_fp.start).total_seconds()), fp.event_id)
        return (float("inf"), fp.event_id)

    def qualifies(self, score: SimilarityScore) -> bool:
        """Overall threshold plus per-dimension floors on critical dimensions."""
        thresholds = self.config.thresholds
        if score.overall < thresholds.overall:
            return False
        dimensions = score.dimensions()
        for name in self.config.matching.critical_dimensions:
            if dimensions[name] < getattr(thresholds, name):
                return False
        return True

    @staticmethod
    def _rank_key(match: Match):
        ingested = match.matched_ingested_at or _FAR_FUTURE
        return (-match.confidence, -match.similarity.venue, ingested, match.matched_id)

    def _build_match(self, target: EventRecord, target_fp: Fingerprint,
                     candidate: EventRecord, candidate_fp: Fingerprint,
                     score: SimilarityScore) -> Match:
        return Match(
            target_id=target.id,
            matched_id=candidate.id,
            similarity=score,
            reasons=self.match_reasons(target_fp, candidate_fp, score),
            risk_factors=self.risk_factors(target, candidate),
            matched_ingested_at=candidate.ingested,
            event=candidate,
        )

    def match_reasons(self, fp_a: Fingerprint, fp_b: Fingerprint,
                      score: SimilarityScore) -> List[str]:
        reasons = []
        thresholds = self.config.thresholds

        if score.title >= thresholds.title:
            reasons.append(f"High title similarity ({score.title:.1%})")
        if fp_a.venue and fp_a.venue == fp_b.venue:
            reasons.append("Same venue")
        elif score.venue >= thresholds.venue:
            reasons.append(f"Similar venue ({score.venue:.1%})")

        distance = self.engine.distance_meters(fp_a, fp_b)
        if distance is not None and score.location >= thresholds.location:
            reasons.append(f"Nearby location ({distance:.0f}m)")

        if fp_a.date_key != UNKNOWN and fp_a.date_key == fp_b.date_key:
            reasons.append("Same date")
        elif score.date >= thresholds.date:
            reasons.append(f"Close dates ({score.date:.1%})")

        if fp_a.price_tier != UNKNOWN and fp_a.price_tier == fp_b.price_tier:
            reasons.append("Same price tier")

        return reasons

    def risk_factors(self, event_a: EventRecord, event_b: EventRecord) -> List[str]:
        """Signals that argue against merging despite a high score."""
        risks = []

        start_a, start_b = event_a.start, event_b.start
        if start_a and start_b and start_a.date() == start_b.date():
            hours = abs((start_a - start_b).total_seconds()) / 3600.0
            if hours > TIME_WINDOW_HOURS:
                risks.append(f"Different time windows on the same date ({hours:.1f}h apart)")

        if event_a.price_min is not None and event_b.price_min is not None:
            difference = abs(event_a.price_min - event_b.price_min)
            if difference > PRICE_DIFFERENCE_LIMIT:
                risks.append(f"Significant price difference ({difference:.2f})")

        if event_a.category and event_b.category:
            if event_a.category.strip().lower() != event_b.category.strip().lower():
                risks.append(f"Different categories ({event_a.category} vs {event_b.category})")

        if event_a.city and event_b.city:
            if event_a.city.strip().lower() != event_b.city.strip().lower():
                risks.append(f"Different cities ({event_a.city} vs {event_b.city})")

        return risks

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)
