"""
Deduplication System

Facade composing the fingerprint engine, match finder, conflict resolver,
event merger and merge history behind a check/merge/report interface. It
owns configuration, caching and batch policy, and is the boundary at which
unexpected errors are caught, logged and recorded as failed merges.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .cache import FingerprintCache
from .config import DedupConfig, build_config
from .conflict_resolver import ConflictResolver, SourceRegistry
from .errors import ConfigurationError
from .event_merger import EventMerger
from .fingerprint import FingerprintEngine
from .logging_config import Timer, log_error, log_event
from .match_finder import MatchFinder
from .merge_history import MergeHistoryTracker
from .models import (
    BatchResult,
    DataSource,
    DuplicateCheckResult,
    EventRecord,
    Match,
    MergeDecision,
    MergeHistoryEntry,
    MergeResult,
    MergeStatus,
    ValidationResult,
)
from .performance import BatchProcessor

logger = logging.getLogger(__name__)

LISTENER_EVENTS = ("duplicates_found", "merge_executed", "merge_failed", "merge_blocked")

Listener = Callable[[Dict[str, Any]], None]


class DeduplicationSystem:
    """
    Entry point for event deduplication.

    Usage:
        system = DeduplicationSystem({"thresholds": {"overall": 0.85}})
        check = system.check_for_duplicates(event, candidates)
        if check.is_duplicate:
            decision = system.create_merge_decision(primary, duplicates, "merge_fields")
            result = system.execute_merge(decision, actor_id="ingest-worker")
    """

    def __init__(self, config: Union[DedupConfig, Mapping[str, Any], None] = None,
                 registry: Optional[SourceRegistry] = None,
                 history: Optional[MergeHistoryTracker] = None):
        """Initialize the system.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = build_config(config)
        self.registry = registry or SourceRegistry()
        self.history = history or MergeHistoryTracker(
            slow_merge_ms=self.config.quality.slow_merge_ms,
            low_confidence_threshold=self.config.quality.low_confidence_threshold,
        )
        self.cache = FingerprintCache(
            max_size=self.config.performance.cache_size,
            ttl=self.config.performance.cache_ttl_seconds,
        )
        self.resolver = ConflictResolver(self.registry)
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._build_components()

        self.stats = {
            "duplicate_checks": 0,
            "duplicates_detected": 0,
            "merges_executed": 0,
            "merges_failed": 0,
            "unexpected_errors": 0,
            "total_check_ms": 0.0,
            "total_merge_ms": 0.0,
        }

        logger.info("🚀 Deduplication system initialized")

    def _build_components(self) -> None:
        cache = self.cache if self.config.performance.enable_caching else None
        self.engine = FingerprintEngine(self.config, cache=cache)
        self.finder = MatchFinder(self.engine, self.config)
        self.merger = EventMerger(self.resolver, self.history, self.config)
        self.batch = BatchProcessor(self.finder, self.merger, self.config, execute=self.execute_merge)

    def update_configuration(self, overrides: Mapping[str, Any]) -> DedupConfig:
        """Apply a partial configuration; invalid values leave the current one in place."""
        new_config = build_config(self.config, **dict(overrides))
        self.config = new_config
        self.cache.clear()
        self.cache.max_size = new_config.performance.cache_size
        self.cache.ttl = new_config.performance.cache_ttl_seconds
        self.history.slow_merge_ms = new_config.quality.slow_merge_ms
        self.history.low_confidence_threshold = new_config.quality.low_confidence_threshold
        self._build_components()
        logger.info("Deduplication configuration updated")
        return new_config

    def add_listener(self, event_name: str, callback: Listener) -> None:
        """Register a synchronous callback for a merge lifecycle event."""
        if event_name not in LISTENER_EVENTS:
            raise ConfigurationError(
                f"Unknown listener event '{event_name}'",
                config_key="listeners",
                context={"available": list(LISTENER_EVENTS)},
            )
        self._listeners[event_name].append(callback)

    def remove_listener(self, event_name: str, callback: Listener) -> None:
        if callback in self._listeners.get(event_name, []):
            self._listeners[event_name].remove(callback)

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event_name, [])):
            try:
                callback(payload)
            except Exception as e:
                log_error(__name__, f"Listener for {event_name} failed", e, listener_event=event_name)

    def find_matches(self, target, candidates: Iterable[Any]) -> List[Match]:
        return self.finder.find_matches(target, candidates)

    def check_for_duplicates(self, target, candidates: Iterable[Any]) -> DuplicateCheckResult:
        """Summarize the matches for ``target`` into a decision-ready result.

        Matches that qualify but carry risk factors, or that score below the
        auto-merge threshold, are returned with ``needs_review`` set instead
        of being forced into a yes/no answer.
        """
        with Timer() as timer:
            matches = self.finder.find_matches(target, candidates)

        self.stats["duplicate_checks"] += 1
        self.stats["total_check_ms"] += timer.duration_ms

        if not matches:
            return DuplicateCheckResult(
                is_duplicate=False,
                confidence=0.0,
                recommendations=["No duplicates found; store as a new event"],
            )

        best = matches[0]
        quality = self.config.quality
        risky = any(m.risk_factors for m in matches)
        below_auto = best.confidence < quality.auto_merge_threshold
        needs_review = quality.require_manual_review or risky or (
            below_auto and quality.review_band_policy == "manual_review"
        )

        recommendations = []
        if needs_review:
            recommendations.append(
                f"Flag for manual review: best match {best.matched_id} at {best.confidence:.1%}"
            )
            for match in matches:
                for risk in match.risk_factors:
                    recommendations.append(f"{match.matched_id}: {risk}")
        else:
            recommendations.append(
                f"Merge into {best.matched_id} (confidence {best.confidence:.1%})"
            )
        if len(matches) > 1:
            recommendations.append(f"{len(matches)} candidate duplicates; consider merging the whole cluster")

        self.stats["duplicates_detected"] += 1
        result = DuplicateCheckResult(
            is_duplicate=True,
            confidence=best.confidence,
            matches=matches,
            duplicate_event_ids=[m.matched_id for m in matches],
            primary_event_id=best.matched_id,
            needs_review=needs_review,
            recommendations=recommendations,
        )
        self._emit("duplicates_found", {
            "target_id": best.target_id,
            "duplicate_event_ids": result.duplicate_event_ids,
            "confidence": result.confidence,
            "needs_review": needs_review,
        })
        return result

    def create_merge_decision(self, primary, duplicates: Iterable[Any],
                              strategy: Optional[str] = None,
                              field_strategies: Optional[Mapping[str, str]] = None,
                              confidence: Optional[float] = None) -> MergeDecision:
        decision = self.merger.create_merge_decision(
            primary, list(duplicates), strategy, field_strategies, confidence
        )
        if decision.status == MergeStatus.BLOCKED:
            self._emit("merge_blocked", {
                "decision_id": decision.decision_id,
                "primary_event_id": decision.primary.id,
                "fields": decision.unresolved_fields,
            })
        return decision

    def validate_merge_decision(self, decision: MergeDecision) -> ValidationResult:
        return self.merger.validate_merge_decision(decision)

    def execute_merge(self, decision: MergeDecision, actor_id: str = "system") -> MergeResult:
        """Execute a decision, converting unexpected failures into a failed result.

        Unexpected exceptions (for example from a custom strategy or history
        store) are logged, recorded as failed merge attempts and returned;
        they are never silently dropped.
        """
        with Timer() as timer:
            try:
                result = self.merger.execute_merge(decision, actor_id)
            except Exception as e:
                self.stats["unexpected_errors"] += 1
                log_error(
                    __name__, "Unexpected merge failure", e,
                    decision_id=decision.decision_id, actor_id=actor_id,
                )
                result = MergeResult(
                    success=False,
                    error=f"Unexpected error during merge: {type(e).__name__}: {e}",
                    errors=[str(e)],
                    decision_id=decision.decision_id,
                )

        self.stats["total_merge_ms"] += timer.duration_ms

        if result.success:
            self.stats["merges_executed"] += 1
            log_event(
                __name__, "merge_executed",
                decision_id=decision.decision_id,
                history_id=result.history_id,
                actor_id=actor_id,
            )
            self._emit("merge_executed", {
                "decision_id": decision.decision_id,
                "history_id": result.history_id,
                "merged_event_id": result.merged_event.id if result.merged_event else None,
                "duplicate_event_ids": decision.duplicate_ids,
                "quality_delta": result.quality_delta,
            })
            return result

        self.stats["merges_failed"] += 1
        try:
            result.history_id = self.history.record_failure(
                decision, actor_id, result.error or "merge failed", timer.duration_ms
            )
        except Exception as e:
            log_error(__name__, "Could not record failed merge", e, decision_id=decision.decision_id)

        self._emit("merge_failed", {
            "decision_id": decision.decision_id,
            "primary_event_id": decision.primary.id,
            "error": result.error,
        })
        return result

    def batch_process_events(self, events: Iterable[Any], mode: str = "batch") -> BatchResult:
        return self.batch.batch_process_events(events, mode)

    def register_data_source(self, name: str, reliability: float,
                             data_quality: Optional[float] = None) -> DataSource:
        source = self.registry.register(name, reliability, data_quality)
        self.cache.clear()
        return source

    def get_merge_history(self, event_id: str) -> List[MergeHistoryEntry]:
        return self.history.get_event_history(event_id)

    def get_analytics(self, date_range=None, strategy: Optional[str] = None) -> Dict[str, Any]:
        return self.history.get_analytics(date_range=date_range, strategy=strategy)

    def generate_audit_report(self) -> Dict[str, Any]:
        return self.history.generate_audit_report()

    def export_history(self, format: str = "json") -> str:
        return self.history.export_history(format)

    def import_history(self, data) -> int:
        return self.history.import_history(data)

    def get_performance_metrics(self) -> Dict[str, Any]:
        checks = self.stats["duplicate_checks"]
        merges = self.stats["merges_executed"] + self.stats["merges_failed"]
        return {
            **self.stats,
            "avg_check_ms": self.stats["total_check_ms"] / checks if checks else 0.0,
            "avg_merge_ms": self.stats["total_merge_ms"] / merges if merges else 0.0,
            "cache": self.cache.get_stats(),
            "caching_enabled": self.config.performance.enable_caching,
            "fingerprint_engine": self.engine.get_statistics(),
            "match_finder": self.finder.get_statistics(),
            "merger": dict(self.merger.stats),
            "batch": self.batch.get_statistics(),
            "conflict_resolution": self.resolver.get_resolution_stats(),
        }

    def health_check(self) -> Dict[str, Any]:
        """Report component health as ``ok``, ``warning`` or ``error``."""
        components: Dict[str, Dict[str, Any]] = {}
        recommendations: List[str] = []

        def check(name: str, probe: Callable[[], Dict[str, Any]]) -> None:
            try:
                components[name] = probe()
            except Exception as e:
                log_error(__name__, f"Health check failed for {name}", e)
                components[name] = {"status": "error", "error": str(e)}
                recommendations.append(f"Investigate {name}: {e}")

        def engine_probe():
            probe = EventRecord(id="__health__", title="Health Check", venue_name="Probe Hall",
                                start_time="2024-01-01T20:00:00", is_free=True)
            engine = FingerprintEngine(self.config)
            fingerprint = engine.generate_fingerprint(probe)
            score = engine.calculate_similarity(fingerprint, fingerprint)
            if min(score.dimensions().values()) < 1.0:
                return {"status": "warning", "detail": "an event does not fully match itself"}
            return {"status": "ok", "algorithm": self.config.algorithms.string_matching}

        def resolver_probe():
            stats = self.resolver.get_resolution_stats()
            rate = stats["manual_review_rate"]
            limit = self.config.quality.manual_review_warning_rate
            if stats["total_resolutions"] and rate > limit:
                recommendations.append(
                    f"Manual review rate {rate:.0%} exceeds {limit:.0%}; tune field strategies"
                )
                return {"status": "warning", "manual_review_rate": rate}
            return {"status": "ok", "manual_review_rate": rate, "sources": len(self.registry.snapshot())}

        def cache_probe():
            stats = self.cache.get_stats()
            if not self.config.performance.enable_caching:
                return {"status": "ok", "enabled": False}
            if stats["lookups"] >= 100 and stats["hit_rate"] < 0.2:
                recommendations.append("Cache hit rate is low; consider a larger cache or longer TTL")
                return {"status": "warning", "hit_rate": stats["hit_rate"]}
            return {"status": "ok", "hit_rate": stats["hit_rate"], "size": stats["size"]}

        def history_probe():
            statistics = self.history.get_statistics()
            issues = self.history.identify_quality_issues()
            if issues:
                recommendations.append(f"{len(issues)} merge history anomalies; see the audit report")
                return {"status": "warning", "anomalies": len(issues), "entries": statistics["total_entries"]}
            return {"status": "ok", "entries": statistics["total_entries"]}

        check("fingerprint_engine", engine_probe)
        check("conflict_resolver", resolver_probe)
        check("cache", cache_probe)
        check("merge_history", history_probe)

        statuses = {c["status"] for c in components.values()}
        if "error" in statuses:
            status = "error"
        elif "warning" in statuses:
            status = "warning"
        else:
            status = "ok"

        return {"status": status, "components": components, "recommendations": recommendations}
