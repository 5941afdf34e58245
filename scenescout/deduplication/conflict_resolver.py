"""
Conflict Resolution

Picks a single value for a field on which duplicate events disagree, using
a named strategy selected per field or globally. Source trust scores come
from an injected ``SourceRegistry`` rather than module state.
"""

import logging
import threading
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .models import DataSource, FieldCandidate, FieldResolution, is_present

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE_SCORE = 0.5

DEFAULT_SOURCES = {
    "primary": (0.95, 0.90),
    "manual": (0.98, 0.95),
    "eventbrite": (0.88, 0.85),
    "ticketmaster": (0.85, 0.82),
    "meetup": (0.78, 0.75),
    "facebook": (0.72, 0.70),
    "google_places": (0.92, 0.90),
    "foursquare": (0.85, 0.80),
    "yelp": (0.80, 0.78),
}

DEFAULT_FIELD_RULES = {
    "title": "highest_quality",
    "description": "most_complete",
    "start_time": "latest_wins",
    "end_time": "latest_wins",
    "venue_name": "most_complete",
    "address": "most_complete",
    "city": "most_complete",
    "latitude": "highest_quality",
    "longitude": "highest_quality",
    "price_min": "most_complete",
    "price_max": "most_complete",
    "currency": "most_complete",
    "is_free": "highest_quality",
    "category": "highest_quality",
    "tags": "merge_values",
    "website_url": "most_complete",
    "ticket_url": "most_complete",
    "image_url": "most_complete",
    "last_modified": "latest_wins",
    "quality_score": "primary_wins",
    "ingested_at": "primary_wins",
    "source": "primary_wins",
    "status": "primary_wins",
}

FALLBACK_STRATEGY = "most_complete"


def completeness(value: Any) -> float:
    """How populated a value is, in [0, 1]."""
    if not is_present(value):
        return 0.0
    if isinstance(value, str):
        return min(1.0, len(value.strip()) / 100.0)
    if isinstance(value, (list, tuple, set)):
        return min(1.0, len(value) / 10.0)
    if isinstance(value, dict):
        return min(1.0, len(value) / 5.0)
    return 0.8


class SourceRegistry:
    """Trust scores per data provider.

    Registration is an administrative operation guarded by a lock; readers
    take a snapshot so one resolution never sees a half-applied update.
    """

    def __init__(self, sources: Optional[Mapping[str, Any]] = None, include_defaults: bool = True):
        self._lock = threading.Lock()
        self._sources: Dict[str, DataSource] = {}

        if include_defaults:
            for name, (reliability, data_quality) in DEFAULT_SOURCES.items():
                self._sources[name] = DataSource(name, reliability, data_quality)

        for name, spec in (sources or {}).items():
            if isinstance(spec, DataSource):
                self.register(name, spec.reliability, spec.data_quality)
            else:
                self.register(name, **spec)

    def register(self, name: str, reliability: float, data_quality: Optional[float] = None) -> DataSource:
        """Register or replace a data source.

        Raises:
            ConfigurationError: If a score is outside [0, 1] or the name is empty
        """
        if not name:
            raise ConfigurationError("Data source name is required", config_key="data_sources")
        if data_quality is None:
            data_quality = reliability
        for label, value in (("reliability", reliability), ("data_quality", data_quality)):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(
                    f"Data source '{name}' {label} must be within [0, 1], got {value}",
                    config_key=f"data_sources.{name}.{label}",
                )

        source = DataSource(name=name, reliability=float(reliability), data_quality=float(data_quality))
        with self._lock:
            self._sources[name] = source
        logger.info(f"Registered data source '{name}' (reliability={reliability:.2f})")
        return source

    def get(self, name: Optional[str]) -> DataSource:
        with self._lock:
            source = self._sources.get(name or "")
        return source or DataSource(name or "unknown", UNKNOWN_SOURCE_SCORE, UNKNOWN_SOURCE_SCORE)

    def snapshot(self) -> Dict[str, DataSource]:
        with self._lock:
            return dict(self._sources)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._sources

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {"reliability": s.reliability, "data_quality": s.data_quality}
            for name, s in sorted(self.snapshot().items())
        }


StrategyFunction = Callable[[str, Sequence[FieldCandidate], Mapping[str, DataSource]],
                            Union[FieldCandidate, FieldResolution]]


class ConflictResolver:
    """
    Resolves field-level disagreements between duplicate events.

    Every built-in strategy is deterministic: ties go to the earliest
    candidate, and callers pass the primary event's candidate first.
    """

    def __init__(self, registry: Optional[SourceRegistry] = None,
                 field_rules: Optional[Mapping[str, str]] = None,
                 history_size: int = 100):
        self.registry = registry or SourceRegistry()
        self.field_rules = dict(DEFAULT_FIELD_RULES)
        self.history_size = history_size
        self._history: Dict[str, Deque[Dict[str, Any]]] = {}
        self._history_lock = threading.Lock()

        self._strategies: Dict[str, StrategyFunction] = {
            "primary_wins": self._primary_wins,
            "latest_wins": self._latest_wins,
            "most_complete": self._most_complete,
            "highest_quality": self._highest_quality,
            "merge_values": self._merge_values,
            "manual_review": self._manual_review,
        }

        for field_name, strategy in (field_rules or {}).items():
            self.set_field_rule(field_name, strategy)

    @property
    def strategies(self) -> List[str]:
        return sorted(self._strategies)

    def has_strategy(self, name: str) -> bool:
        return name in self._strategies

    def register_strategy(self, name: str, func: StrategyFunction) -> None:
        """Add a strategy.

        ``func(field_name, candidates, sources)`` returns either the winning
        ``FieldCandidate`` or a complete ``FieldResolution``.
        """
        if not callable(func):
            raise ConfigurationError(f"Strategy '{name}' must be callable", config_key="strategies")
        self._strategies[name] = func

    def set_field_rule(self, field_name: str, strategy: str) -> None:
        self._require_strategy(strategy)
        self.field_rules[field_name] = strategy

    def strategy_for(self, field_name: str) -> str:
        return self.field_rules.get(field_name, FALLBACK_STRATEGY)

    def register_data_source(self, name: str, reliability: float,
                             data_quality: Optional[float] = None) -> DataSource:
        return self.registry.register(name, reliability, data_quality)

    def _require_strategy(self, strategy: str) -> None:
        if strategy not in self._strategies:
            raise ConfigurationError(
                f"Unknown conflict resolution strategy '{strategy}'",
                config_key="strategy",
                context={"available": self.strategies},
            )

    def resolve_field_conflict(self, field_name: str, candidates: Sequence[FieldCandidate],
                               strategy: Optional[str] = None) -> FieldResolution:
        """Pick the value to keep for one field.

        Args:
            field_name: Field being resolved
            candidates: One entry per participating event, primary first
            strategy: Strategy name; defaults to the field's rule

        Returns:
            The resolution, flagged ``needs_manual_review`` for manual_review

        Raises:
            ConfigurationError: If the strategy is not registered
        """
        strategy = strategy or self.strategy_for(field_name)
        self._require_strategy(strategy)

        present = [c for c in candidates if is_present(c.value)]
        if not present:
            resolution = FieldResolution(
                field_name=field_name,
                value=None,
                confidence=1.0,
                strategy_used=strategy,
                origin="resolved",
                source_event_id=candidates[0].event_id if candidates else None,
                reason="no candidate has a value",
            )
        else:
            outcome = self._strategies[strategy](field_name, present, self.registry.snapshot())
            if isinstance(outcome, FieldResolution):
                resolution = outcome
            else:
                resolution = FieldResolution(
                    field_name=field_name,
                    value=outcome.value,
                    confidence=0.7,
                    strategy_used=strategy,
                    origin="resolved",
                    source_event_id=outcome.event_id,
                    contributing_event_ids=(outcome.event_id,),
                    reason=f"selected by custom strategy '{strategy}'",
                )

        self._record(field_name, resolution)
        return resolution

    def _record(self, field_name: str, resolution: FieldResolution) -> None:
        with self._history_lock:
            history = self._history.setdefault(field_name, deque(maxlen=self.history_size))
            history.append({
                "strategy": resolution.strategy_used,
                "confidence": resolution.confidence,
                "manual_review": resolution.needs_manual_review,
            })

    def _resolution(self, field_name: str, winner: FieldCandidate, strategy: str,
                    confidence: float, reason: str, **kwargs) -> FieldResolution:
        return FieldResolution(
            field_name=field_name,
            value=winner.value,
            confidence=max(0.0, min(1.0, confidence)),
            strategy_used=strategy,
            origin="resolved",
            source_event_id=winner.event_id,
            contributing_event_ids=kwargs.pop("contributing_event_ids", (winner.event_id,)),
            reason=reason,
            **kwargs,
        )

    @staticmethod
    def _best(candidates: Sequence[FieldCandidate], key: Callable[[FieldCandidate], Any]) -> FieldCandidate:
        """First candidate with the maximum key."""
        best = candidates[0]
        best_key = key(best)
        for candidate in candidates[1:]:
            candidate_key = key(candidate)
            if candidate_key > best_key:
                best, best_key = candidate, candidate_key
        return best

    def _primary_wins(self, field_name, candidates, sources) -> FieldResolution:
        primary = next((c for c in candidates if c.is_primary), None)
        if primary is not None:
            return self._resolution(field_name, primary, "primary_wins", 1.0, "primary event value")
        return self._resolution(field_name, candidates[0], "primary_wins", 0.8,
                                "primary has no value, first duplicate value kept")

    def _latest_wins(self, field_name, candidates, sources) -> FieldResolution:
        def modified(c: FieldCandidate):
            ts = c.event.modified
            return (ts is not None, ts.timestamp() if ts else 0.0)

        winner = self._best(candidates, modified)
        has_timestamp = winner.event.modified is not None
        return self._resolution(
            field_name, winner, "latest_wins", 0.9 if has_timestamp else 0.5,
            "most recently updated source" if has_timestamp else "no timestamps, first value kept",
        )

    def _most_complete(self, field_name, candidates, sources, strategy: str = "most_complete") -> FieldResolution:
        winner = self._best(candidates, lambda c: completeness(c.value))
        return self._resolution(
            field_name, winner, strategy, max(0.5, completeness(winner.value)), "most populated value",
        )

    def _highest_quality(self, field_name, candidates, sources) -> FieldResolution:
        def trust(c: FieldCandidate):
            source = sources.get(c.source or "") or DataSource("unknown", UNKNOWN_SOURCE_SCORE, UNKNOWN_SOURCE_SCORE)
            return (source.reliability, source.data_quality)

        winner = self._best(candidates, trust)
        reliability, _ = trust(winner)
        return self._resolution(
            field_name, winner, "highest_quality", reliability,
            f"most reliable source ({winner.source or 'unknown'})",
        )

    def _merge_values(self, field_name, candidates, sources) -> FieldResolution:
        if not all(isinstance(c.value, (list, tuple, set)) for c in candidates):
            resolution = self._most_complete(field_name, candidates, sources, strategy="merge_values")
            resolution.reason = "scalar values, most populated kept"
            return resolution

        merged: List[Any] = []
        seen = set()
        contributors = []
        for candidate in candidates:
            added = False
            for item in candidate.value:
                marker = item.casefold() if isinstance(item, str) else item
                if marker in seen:
                    continue
                seen.add(marker)
                merged.append(item)
                added = True
            if added:
                contributors.append(candidate.event_id)

        return FieldResolution(
            field_name=field_name,
            value=merged,
            confidence=0.9,
            strategy_used="merge_values",
            origin="resolved",
            source_event_id=candidates[0].event_id,
            contributing_event_ids=tuple(contributors),
            reason=f"union of {len(candidates)} values",
        )

    def _manual_review(self, field_name, candidates, sources) -> FieldResolution:
        provisional = next((c for c in candidates if c.is_primary), candidates[0])
        alternatives = []
        for candidate in candidates:
            if candidate.value not in alternatives:
                alternatives.append(candidate.value)
        return self._resolution(
            field_name, provisional, "manual_review", 0.0, "flagged for manual review",
            needs_manual_review=True, alternatives=alternatives,
        )

    def get_resolution_stats(self) -> Dict[str, Any]:
        """Aggregate over the recent resolutions kept per field."""
        with self._history_lock:
            records = {name: list(history) for name, history in self._history.items()}

        flat = [r for history in records.values() for r in history]
        total = len(flat)
        manual = sum(1 for r in flat if r["manual_review"])

        return {
            "total_resolutions": total,
            "by_strategy": dict(Counter(r["strategy"] for r in flat)),
            "by_field": {name: len(history) for name, history in records.items()},
            "average_confidence": sum(r["confidence"] for r in flat) / total if total else 0.0,
            "manual_review_count": manual,
            "manual_review_rate": manual / total if total else 0.0,
        }

    def reset_stats(self) -> None:
        with self._history_lock:
            self._history.clear()
