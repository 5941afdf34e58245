"""
Event Merger

Builds merge decisions from a primary event and its duplicates, validates
them, and applies them to produce the canonical merged record. Execution is
all-or-nothing and never touches caller-owned storage.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .config import DedupConfig
from .conflict_resolver import ConflictResolver
from .errors import ConfigurationError, MergeExecutionError
from .fingerprint import coerce_event
from .logging_config import Timer, log_performance
from .merge_history import MergeHistoryTracker
from .models import (
    EventRecord,
    FieldCandidate,
    FieldResolution,
    MergeDecision,
    MergeResult,
    MergeStatus,
    ValidationResult,
    is_present,
)

logger = logging.getLogger(__name__)

# Fields stamped by the merger itself rather than resolved
MERGE_METADATA_FIELDS = ("id", "merged_from", "merged_at")

# Always taken from the primary under the global policies
IDENTITY_FIELDS = ("source", "ingested_at", "quality_score")

# Global merge strategy -> (default field strategy, per-field overrides).
# None as the default means "use the resolver's per-field rules".
MERGE_POLICIES: Dict[str, tuple] = {
    "keep_primary": ("primary_wins", {}),
    "enhance_primary": ("primary_wins", {"tags": "merge_values"}),
    "merge_fields": (None, {}),
    "quality_based": ("highest_quality", {"description": "most_complete", "tags": "merge_values"}),
    "temporal_priority": ("latest_wins", {"tags": "merge_values"}),
    "source_priority": ("highest_quality", {}),
}

QUALITY_FIELD_WEIGHTS = {
    "title": 10,
    "description": 8,
    "venue_name": 9,
    "start_time": 10,
    "end_time": 6,
    "price_min": 7,
    "price_max": 7,
    "website_url": 5,
    "ticket_url": 8,
    "image_url": 4,
    "category": 6,
    "tags": 3,
    "latitude": 7,
    "longitude": 7,
}


def event_quality_score(event: EventRecord) -> float:
    """Weighted share of the important fields that are populated, in [0, 1]."""
    total = sum(QUALITY_FIELD_WEIGHTS.values())
    earned = sum(
        weight for name, weight in QUALITY_FIELD_WEIGHTS.items()
        if is_present(getattr(event, name, None))
    )
    return earned / total


def _ordered_unique(values) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class EventMerger:
    """
    Creates, validates and executes merge decisions.

    Decision lifecycle: ``proposed`` -> ``validated`` -> ``executed``, with
    ``blocked`` while a manual-review field is unresolved and ``rejected``
    when execution is refused by validation.
    """

    def __init__(self, resolver: Optional[ConflictResolver] = None,
                 history: Optional[MergeHistoryTracker] = None,
                 config: Optional[DedupConfig] = None):
        self.resolver = resolver or ConflictResolver()
        self.history = history
        self.config = config or DedupConfig()

        self.stats = {
            "decisions_created": 0,
            "decisions_blocked": 0,
            "merges_executed": 0,
            "merges_rejected": 0,
            "identity_merges": 0,
        }

    def available_strategies(self) -> List[str]:
        return sorted(set(MERGE_POLICIES) | set(self.resolver.strategies))

    def field_strategy(self, strategy: str, field_name: str,
                       field_strategies: Optional[Mapping[str, str]] = None) -> str:
        """Conflict strategy applied to ``field_name`` under a global strategy."""
        if field_strategies and field_name in field_strategies:
            return field_strategies[field_name]
        if field_name in IDENTITY_FIELDS:
            return "primary_wins"
        if strategy in MERGE_POLICIES:
            default, overrides = MERGE_POLICIES[strategy]
            if field_name in overrides:
                return overrides[field_name]
            return default or self.resolver.strategy_for(field_name)
        return strategy

    def _check_strategy(self, strategy: str, field_strategies: Optional[Mapping[str, str]]) -> None:
        if strategy not in MERGE_POLICIES and not self.resolver.has_strategy(strategy):
            raise ConfigurationError(
                f"Unknown merge strategy '{strategy}'",
                config_key="strategy",
                context={"available": self.available_strategies()},
            )
        for field_name, name in (field_strategies or {}).items():
            if not self.resolver.has_strategy(name):
                raise ConfigurationError(
                    f"Unknown conflict resolution strategy '{name}' for field '{field_name}'",
                    config_key=f"field_strategies.{field_name}",
                )

    def create_merge_decision(self, primary, duplicates: Sequence[Any],
                              strategy: Optional[str] = None,
                              field_strategies: Optional[Mapping[str, str]] = None,
                              confidence: Optional[float] = None) -> MergeDecision:
        """Resolve every field across the primary and its duplicates.

        Args:
            primary: Surviving event
            duplicates: Events to fold into the primary
            strategy: Global merge strategy or a conflict strategy name
            field_strategies: Per-field conflict strategy overrides
            confidence: Match confidence backing this merge, for the audit trail

        Raises:
            ConfigurationError: If a strategy name is unknown
        """
        strategy = strategy or self.config.matching.default_merge_strategy
        self._check_strategy(strategy, field_strategies)

        primary = coerce_event(primary)
        duplicates = [coerce_event(d) for d in duplicates]
        participants = [primary] + duplicates
        dumps = [p.field_values() for p in participants]

        field_names = _ordered_unique(
            name for dump in dumps for name in dump if name not in MERGE_METADATA_FIELDS
        )

        resolutions: Dict[str, FieldResolution] = {}
        for field_name in field_names:
            resolution = self._resolve_field(
                field_name, participants, dumps, strategy, field_strategies
            )
            if resolution is not None:
                resolutions[field_name] = resolution

        decision = MergeDecision(
            primary=primary,
            duplicates=duplicates,
            strategy=strategy,
            resolutions=resolutions,
            confidence=confidence,
        )
        if decision.unresolved_fields:
            decision.status = MergeStatus.BLOCKED
            self.stats["decisions_blocked"] += 1
            logger.info(
                f"Merge decision {decision.decision_id} blocked on manual review: "
                f"{', '.join(decision.unresolved_fields)}"
            )

        self.stats["decisions_created"] += 1
        logger.debug(
            f"Created merge decision {decision.decision_id}: {primary.id} <- "
            f"{decision.duplicate_ids} ({strategy})"
        )
        return decision

    def _resolve_field(self, field_name: str, participants: List[EventRecord],
                       dumps: List[Dict[str, Any]], strategy: str,
                       field_strategies: Optional[Mapping[str, str]]) -> Optional[FieldResolution]:
        holders = [
            (event, dump.get(field_name))
            for event, dump in zip(participants, dumps)
            if is_present(dump.get(field_name))
        ]
        if not holders:
            return None

        first_event, first_value = holders[0]
        if len(holders) == 1 or all(value == first_value for _, value in holders[1:]):
            origin = "carried_over" if len(holders) == 1 and first_event is not participants[0] else "agreed"
            return FieldResolution(
                field_name=field_name,
                value=first_value,
                confidence=1.0,
                strategy_used=origin,
                origin=origin,
                source_event_id=first_event.id,
                contributing_event_ids=tuple(event.id for event, _ in holders),
            )

        candidates = [
            FieldCandidate(
                value=dump.get(field_name),
                event=event,
                source=event.source,
                is_primary=index == 0,
            )
            for index, (event, dump) in enumerate(zip(participants, dumps))
        ]
        return self.resolver.resolve_field_conflict(
            field_name, candidates, self.field_strategy(strategy, field_name, field_strategies)
        )

    def validate_merge_decision(self, decision: MergeDecision) -> ValidationResult:
        """Check a decision before execution; never raises.

        Moves a non-terminal decision to ``validated`` when it passes and to
        ``blocked`` when manual-review fields remain.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if decision.status == MergeStatus.EXECUTED:
            errors.append(f"Decision {decision.decision_id} has already been executed")
            return ValidationResult(is_valid=False, errors=errors)
        if decision.status == MergeStatus.REJECTED:
            errors.append(f"Decision {decision.decision_id} was rejected")
            return ValidationResult(is_valid=False, errors=errors)

        primary_id = decision.primary.id
        duplicate_ids = decision.duplicate_ids

        if primary_id in duplicate_ids:
            errors.append(f"Primary event {primary_id} appears in its own duplicates")

        seen = set()
        for dup_id in duplicate_ids:
            if dup_id in seen:
                errors.append(f"Duplicate event {dup_id} is listed more than once")
            seen.add(dup_id)

        participants = set(decision.participant_ids)
        for field_name, resolution in decision.resolutions.items():
            if field_name in MERGE_METADATA_FIELDS:
                errors.append(f"Field '{field_name}' is managed by the merger and cannot be resolved")
                continue
            if not is_present(resolution.value):
                continue
            if resolution.source_event_id not in participants:
                errors.append(
                    f"Field '{field_name}' is not traceable to a participating event "
                    f"(source {resolution.source_event_id!r})"
                )
            stray = [e for e in resolution.contributing_event_ids if e not in participants]
            if stray:
                errors.append(f"Field '{field_name}' cites non-participating events {stray}")

        unresolved = decision.unresolved_fields
        if unresolved:
            errors.append(
                f"Unresolved conflict on field(s) {', '.join(unresolved)}: manual review required"
            )

        if self.history is not None:
            errors.extend(self._history_conflicts(decision))

        title = decision.resolutions.get("title")
        if title is None or not is_present(title.value):
            warnings.append("Merged event will have no title")
        low = self.config.quality.low_confidence_threshold
        if decision.confidence is not None and decision.confidence < low:
            warnings.append(f"Low match confidence ({decision.confidence:.2f})")

        is_valid = not errors
        if is_valid:
            decision.status = MergeStatus.VALIDATED
        elif unresolved:
            decision.status = MergeStatus.BLOCKED

        return ValidationResult(is_valid=is_valid, errors=errors, warnings=warnings)

    def _history_conflicts(self, decision: MergeDecision) -> List[str]:
        """Detect events consumed by merges this decision has not seen."""
        errors = []
        primary_id = decision.primary.id

        consumed = self.history.consumed_by(primary_id)
        if consumed is not None:
            errors.append(f"Primary event {primary_id} was already merged into {consumed}")

        for dup_id in decision.duplicate_ids:
            consumed = self.history.consumed_by(dup_id)
            if consumed is not None:
                errors.append(f"Event {dup_id} was already merged into {consumed} by a prior merge")

        missing = self.history.merged_into(primary_id) - set(decision.primary.merged_from)
        if missing:
            errors.append(
                f"Primary event {primary_id} is stale: prior merges of {sorted(missing)} "
                f"are not reflected; re-fetch before merging"
            )
        return errors

    def build_merged_event(self, decision: MergeDecision) -> EventRecord:
        """Apply the resolved values onto a fresh copy of the primary."""
        data = decision.primary.field_values()
        for field_name, resolution in decision.resolutions.items():
            data[field_name] = resolution.value

        lineage = list(decision.primary.merged_from)
        for duplicate in decision.duplicates:
            lineage.append(duplicate.id)
            lineage.extend(duplicate.merged_from)
        data["id"] = decision.primary.id
        data["merged_from"] = _ordered_unique(lineage)
        data["merged_at"] = datetime.now(timezone.utc)

        return EventRecord.model_validate(data)

    def execute_merge(self, decision: MergeDecision, actor_id: str = "system") -> MergeResult:
        """Apply a decision and record it in the merge history.

        Returns a failed result (never a partial record) when the decision is
        invalid, blocked or already executed.
        """
        with Timer() as timer:
            validation = self.validate_merge_decision(decision)
            if not validation.is_valid:
                return self._refuse(decision, validation)

            if not decision.duplicates:
                decision.status = MergeStatus.EXECUTED
                decision.executed_at = datetime.now(timezone.utc)
                self.stats["identity_merges"] += 1
                return MergeResult(
                    success=True,
                    merged_event=decision.primary,
                    warnings=validation.warnings,
                    decision_id=decision.decision_id,
                )

            try:
                merged = self.build_merged_event(decision)
            except (PydanticValidationError, ValueError, TypeError) as e:
                decision.status = MergeStatus.REJECTED
                self.stats["merges_rejected"] += 1
                message = f"Merged event failed validation: {e}"
                logger.warning(f"Merge {decision.decision_id} rejected: {message}")
                return MergeResult(
                    success=False,
                    error=message,
                    errors=[message],
                    decision_id=decision.decision_id,
                )

            quality_delta = event_quality_score(merged) - event_quality_score(decision.primary)

        warnings = list(validation.warnings)
        if event_quality_score(merged) < self.config.quality.minimum_quality_score:
            warnings.append(
                f"Merged event quality {event_quality_score(merged):.2f} is below "
                f"the minimum {self.config.quality.minimum_quality_score:.2f}"
            )

        history_id = None
        if self.history is not None:
            history_id = self.history.record_merge(
                decision, decision.primary, merged, actor_id, timer.duration_ms, quality_delta
            )

        decision.status = MergeStatus.EXECUTED
        decision.executed_at = datetime.now(timezone.utc)
        self.stats["merges_executed"] += 1

        logger.info(
            f"Merged {decision.duplicate_ids} into {decision.primary.id} "
            f"({decision.strategy}, quality {quality_delta:+.3f})"
        )
        log_performance(__name__, "execute_merge", timer.duration_ms, decision_id=decision.decision_id)

        return MergeResult(
            success=True,
            merged_event=merged,
            warnings=warnings,
            decision_id=decision.decision_id,
            history_id=history_id,
            quality_delta=quality_delta,
            duration_ms=timer.duration_ms,
        )

    def _refuse(self, decision: MergeDecision, validation: ValidationResult) -> MergeResult:
        unresolved = next((e for e in validation.errors if e.startswith("Unresolved conflict")), None)
        if decision.status == MergeStatus.BLOCKED and unresolved is not None:
            error = unresolved
        else:
            error = "; ".join(validation.errors)
            if not decision.is_terminal:
                decision.status = MergeStatus.REJECTED
            self.stats["merges_rejected"] += 1

        logger.warning(f"Merge {decision.decision_id} not executed: {error}")
        return MergeResult(
            success=False,
            error=error,
            errors=list(validation.errors),
            warnings=list(validation.warnings),
            decision_id=decision.decision_id,
        )

    def require_success(self, result: MergeResult) -> EventRecord:
        """Return the merged event or raise ``MergeExecutionError``."""
        if not result.success or result.merged_event is None:
            raise MergeExecutionError(result.error or "merge failed", decision_id=result.decision_id)
        return result.merged_event
