"""
Batch Processing

Bulk deduplication for ingestion pipelines and cleanup jobs: pair
generation with a sorted date window, optional parallel scoring, union-find
clustering and automatic merging of high-confidence clusters.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import DedupConfig
from .errors import ConfigurationError, DeduplicationError
from .event_merger import EventMerger
from .fingerprint import coerce_event
from .logging_config import log_context, log_performance
from .match_finder import MatchFinder
from .models import BatchResult, EventRecord, Fingerprint, MergeDecision, MergeResult, MergeStatus

logger = logging.getLogger(__name__)

BATCH_MODES = ("batch", "full_scan")

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

Pair = Tuple[int, int]


class UnionFind:
    """Disjoint sets over record indexes with path compression."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, x: int, y: int) -> None:
        root_x, root_y = self.find(x), self.find(y)
        if root_x == root_y:
            return
        if self.rank[root_x] < self.rank[root_y]:
            root_x, root_y = root_y, root_x
        self.parent[root_y] = root_x
        if self.rank[root_x] == self.rank[root_y]:
            self.rank[root_x] += 1

    def groups(self) -> List[List[int]]:
        clusters: Dict[int, List[int]] = {}
        for index in range(len(self.parent)):
            clusters.setdefault(self.find(index), []).append(index)
        return [sorted(members) for members in clusters.values()]


def _ingestion_key(event: EventRecord):
    return (event.ingested or _FAR_FUTURE, event.id)


class BatchProcessor:
    """Runs deduplication over a whole set of events."""

    def __init__(self, finder: MatchFinder, merger: EventMerger,
                 config: Optional[DedupConfig] = None,
                 execute: Optional[Callable[[MergeDecision, str], MergeResult]] = None):
        self.finder = finder
        self.merger = merger
        self.config = config or finder.config
        self.execute = execute or merger.execute_merge

        self.stats = {
            "batches_processed": 0,
            "events_processed": 0,
            "pairs_compared": 0,
            "clusters_found": 0,
            "auto_merges": 0,
            "queued_for_review": 0,
        }

    def batch_process_events(self, events: Iterable[Any], mode: str = "batch") -> BatchResult:
        """Find and merge duplicates across ``events``.

        Args:
            events: Event records or mappings
            mode: ``batch`` compares records within the date window,
                ``full_scan`` compares every pair

        Returns:
            Counts, merged records, the manual review queue and per-record errors
        """
        if mode not in BATCH_MODES:
            raise ConfigurationError(
                f"Unknown batch mode '{mode}', expected one of {list(BATCH_MODES)}",
                config_key="mode",
            )

        started = time.perf_counter()
        result = BatchResult()

        with log_context(batch_mode=mode):
            records = self._load(events, result)
            fingerprints = [self.finder.engine.generate_fingerprint(r) for r in records]
            result.processed_count = len(records)

            pairs = self._candidate_pairs(fingerprints, mode)
            edges = self._score_pairs(fingerprints, pairs)

            compared = set(pairs)
            clusters = []
            for component in self._cluster(len(records), edges):
                clusters.extend(self._split_component(records, fingerprints, component, edges, compared))
            clusters.sort(key=lambda group: min(group[0], *group[1]))
            result.clusters = [[records[i].id for i in sorted([p, *dups])] for p, dups, _ in clusters]
            result.duplicates_found = sum(len(dups) for _, dups, _ in clusters)

            for primary, duplicates, confidence in clusters:
                self._process_cluster(records, primary, duplicates, confidence, mode, result)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result.performance = {
            "mode": mode,
            "processing_time": elapsed_ms,
            "pairs_compared": len(pairs),
            "pairs_matched": len(edges),
            "clusters": len(clusters),
            "parallel": self.config.performance.parallel_processing,
            "events_per_second": len(records) / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0,
        }

        self.stats["batches_processed"] += 1
        self.stats["events_processed"] += len(records)
        self.stats["pairs_compared"] += len(pairs)
        self.stats["clusters_found"] += len(clusters)

        logger.info(
            f"✅ Batch {mode} complete: {len(records)} events, "
            f"{result.duplicates_found} duplicates, {result.merges_completed} merged, "
            f"{len(result.review_queue)} queued for review"
        )
        log_performance(__name__, "batch_process_events", elapsed_ms, mode=mode, events=len(records))
        return result

    def _load(self, events: Iterable[Any], result: BatchResult) -> List[EventRecord]:
        records = []
        seen = set()
        for index, event in enumerate(events):
            try:
                record = coerce_event(event)
            except DeduplicationError as e:
                result.errors.append({"index": index, "event_id": None, "error": str(e)})
                continue
            if record.id in seen:
                result.errors.append({
                    "index": index,
                    "event_id": record.id,
                    "error": f"Event id {record.id} appears more than once in the batch",
                })
                continue
            seen.add(record.id)
            records.append(record)
        return records

    def _candidate_pairs(self, fingerprints: List[Fingerprint], mode: str) -> List[Pair]:
        count = len(fingerprints)
        if mode == "full_scan":
            return [(i, j) for i in range(count) for j in range(i + 1, count)]

        # Sorted neighbourhood over start dates, mirroring MatchFinder.prefilter
        thresholds = self.config.thresholds
        matching = self.config.matching
        date_window = "date" in matching.critical_dimensions and thresholds.date > 0
        if not date_window:
            return [(i, j) for i in range(count) for j in range(i + 1, count)]

        # Without a date the date score is 0 and cannot clear the floor
        dated = sorted(
            (i for i in range(count) if fingerprints[i].start is not None),
            key=lambda i: (fingerprints[i].start, fingerprints[i].event_id),
        )
        horizon = matching.date_horizon_days * 86400.0
        limit = self.config.performance.max_candidates

        pairs = []
        for position, i in enumerate(dated):
            compared = 0
            for j in dated[position + 1:]:
                if (fingerprints[j].start - fingerprints[i].start).total_seconds() > horizon:
                    break
                if compared >= limit:
                    break
                pairs.append((min(i, j), max(i, j)))
                compared += 1
        return sorted(pairs)

    def _score_chunk(self, fingerprints: List[Fingerprint], chunk: List[Pair]) -> List[Tuple[Pair, float]]:
        engine = self.finder.engine
        scored = []
        for i, j in chunk:
            score = engine.calculate_similarity(fingerprints[i], fingerprints[j])
            if self.finder.qualifies(score):
                scored.append(((i, j), score.overall))
        return scored

    def _score_pairs(self, fingerprints: List[Fingerprint], pairs: List[Pair]) -> Dict[Pair, float]:
        performance = self.config.performance
        chunks = [pairs[k:k + performance.batch_size] for k in range(0, len(pairs), performance.batch_size)]

        if performance.parallel_processing and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=performance.max_workers) as executor:
                results = list(executor.map(lambda chunk: self._score_chunk(fingerprints, chunk), chunks))
        else:
            results = [self._score_chunk(fingerprints, chunk) for chunk in chunks]

        return {pair: overall for chunk_result in results for pair, overall in chunk_result}

    @staticmethod
    def _cluster(count: int, edges: Dict[Pair, float]) -> List[List[int]]:
        union_find = UnionFind(count)
        for i, j in sorted(edges):
            union_find.union(i, j)
        return sorted(
            (group for group in union_find.groups() if len(group) > 1),
            key=lambda group: group[0],
        )

    def _direct_score(self, fingerprints: List[Fingerprint], i: int, j: int,
                      edges: Dict[Pair, float], compared: Set[Pair]) -> Optional[float]:
        pair = (min(i, j), max(i, j))
        if pair in edges:
            return edges[pair]
        if pair in compared:
            return None
        score = self.finder.engine.calculate_similarity(fingerprints[i], fingerprints[j])
        return score.overall if self.finder.qualifies(score) else None

    def _split_component(self, records: List[EventRecord], fingerprints: List[Fingerprint],
                         component: List[int], edges: Dict[Pair, float],
                         compared: Set[Pair]) -> List[Tuple[int, List[int], float]]:
        """Break a connected component into groups that match their primary directly.

        Union-find links records transitively, so A~B and B~C does not make
        A~C. The earliest-ingested record takes every member that qualifies
        against it; the rest form groups of their own.
        """
        remaining = sorted(component, key=lambda i: _ingestion_key(records[i]))
        groups = []
        while len(remaining) > 1:
            primary, matched, scores, leftover = remaining[0], [], [], []
            for member in remaining[1:]:
                overall = self._direct_score(fingerprints, primary, member, edges, compared)
                if overall is None:
                    leftover.append(member)
                else:
                    matched.append(member)
                    scores.append(overall)
            if matched:
                groups.append((primary, matched, min(scores)))
            remaining = leftover
        return groups

    def _auto_merge_allowed(self, confidence: float) -> bool:
        quality = self.config.quality
        if quality.require_manual_review:
            return False
        if confidence >= quality.auto_merge_threshold:
            return True
        return quality.review_band_policy == "auto_merge"

    def _process_cluster(self, records: List[EventRecord], primary_index: int, duplicate_indexes: List[int],
                         confidence: float, mode: str, result: BatchResult) -> None:
        primary = records[primary_index]
        duplicates = [records[i] for i in duplicate_indexes]

        try:
            decision = self.merger.create_merge_decision(primary, duplicates, confidence=confidence)
        except DeduplicationError as e:
            result.errors.append({"index": None, "event_id": primary.id, "error": str(e)})
            return

        if decision.status == MergeStatus.BLOCKED or not self._auto_merge_allowed(confidence):
            result.review_queue.append(decision)
            self.stats["queued_for_review"] += 1
            return

        merge_result = self.execute(decision, f"batch:{mode}")
        if merge_result.success:
            if confidence < self.config.quality.auto_merge_threshold:
                result.warnings.append(
                    f"Auto-merged {primary.id} below the auto-merge threshold (confidence {confidence:.2f})"
                )
            result.merged_events.append(merge_result.merged_event)
            result.merges_completed += 1
            self.stats["auto_merges"] += 1
        else:
            result.errors.append({"index": None, "event_id": primary.id, "error": merge_result.error})

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)
