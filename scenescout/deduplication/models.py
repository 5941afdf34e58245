"""Data models for event deduplication."""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MergeExecutionError


DATE_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%d %b %Y",
]


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a datetime leniently, returning None when it cannot be understood.

    Naive values are taken to be UTC. The result is always timezone-aware.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


DateLike = Union[datetime, str, None]


class EventRecord(BaseModel):
    """A candidate real-world event observed from one data source.

    Records are immutable; a merge produces a new record. Unknown fields
    supplied by ingestion adapters are kept and take part in merging.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: DateLike = None
    end_time: DateLike = None
    venue_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    is_free: Optional[bool] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    quality_score: Optional[float] = None
    ingested_at: DateLike = None
    last_modified: DateLike = None
    website_url: Optional[str] = None
    ticket_url: Optional[str] = None
    image_url: Optional[str] = None
    status: Optional[str] = None
    merged_from: List[str] = Field(default_factory=list)
    merged_at: DateLike = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("event id is required")
        return str(v)

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return list(v)

    @property
    def start(self) -> Optional[datetime]:
        return parse_datetime(self.start_time)

    @property
    def ingested(self) -> Optional[datetime]:
        return parse_datetime(self.ingested_at)

    @property
    def modified(self) -> Optional[datetime]:
        return parse_datetime(self.last_modified) or self.ingested

    def field_values(self) -> Dict[str, Any]:
        """All populated and unpopulated fields, including extras."""
        return self.model_dump()

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of the record for audit storage."""
        return self.model_dump(mode="json")


def is_present(value: Any) -> bool:
    """Whether a field value counts as populated."""
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)) and len(value) == 0:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


@dataclass(frozen=True)
class Fingerprint:
    """Normalized, comparable representation of an event record."""

    event_id: str
    title: str
    title_tokens: Tuple[str, ...]
    venue: str
    coordinates: Optional[Tuple[float, float]]
    date_key: str
    start: Optional[datetime]
    price_tier: str
    category: str
    city: str
    content_hash: str

    @property
    def has_date(self) -> bool:
        return self.start is not None


@dataclass(frozen=True)
class SimilarityScore:
    """Per-dimension similarity with the overall score derived on read."""

    title: float
    venue: float
    location: float
    date: float
    semantic: float
    weights: Mapping[str, float] = field(default_factory=dict, compare=False)

    @property
    def overall(self) -> float:
        return sum(self.weights.get(name, 0.0) * value for name, value in self.dimensions().items())

    def dimensions(self) -> Dict[str, float]:
        return {
            "title": self.title,
            "venue": self.venue,
            "location": self.location,
            "date": self.date,
            "semantic": self.semantic,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.dimensions()
        data["overall"] = self.overall
        data["weights"] = dict(self.weights)
        return data


@dataclass
class Match:
    """A candidate duplicate of a target event."""

    target_id: str
    matched_id: str
    similarity: SimilarityScore
    reasons: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    matched_ingested_at: Optional[datetime] = None
    event: Optional[EventRecord] = field(default=None, repr=False, compare=False)

    @property
    def confidence(self) -> float:
        return self.similarity.overall

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "matched_id": self.matched_id,
            "confidence": round(self.confidence, 4),
            "similarity": self.similarity.to_dict(),
            "reasons": list(self.reasons),
            "risk_factors": list(self.risk_factors),
        }


@dataclass(frozen=True)
class DataSource:
    """Trust scores for a data provider."""

    name: str
    reliability: float
    data_quality: float


@dataclass(frozen=True)
class FieldCandidate:
    """One event's value for a contested field."""

    value: Any
    event: EventRecord
    source: Optional[str] = None
    is_primary: bool = False

    @property
    def event_id(self) -> str:
        return self.event.id


@dataclass
class FieldResolution:
    """How one field of a merged event was decided."""

    field_name: str
    value: Any
    confidence: float
    strategy_used: str
    origin: str  # agreed, carried_over, resolved, manual
    source_event_id: Optional[str]
    contributing_event_ids: Tuple[str, ...] = ()
    needs_manual_review: bool = False
    alternatives: List[Any] = field(default_factory=list)
    reason: str = ""

    @property
    def resolved_value(self) -> Any:
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field_name,
            "value": self.value,
            "confidence": self.confidence,
            "strategy": self.strategy_used,
            "origin": self.origin,
            "source_event_id": self.source_event_id,
            "contributing_event_ids": list(self.contributing_event_ids),
            "needs_manual_review": self.needs_manual_review,
            "reason": self.reason,
        }


class MergeStatus(str, Enum):
    PROPOSED = "proposed"
    VALIDATED = "validated"
    BLOCKED = "blocked"
    EXECUTED = "executed"
    REJECTED = "rejected"


@dataclass
class MergeDecision:
    """Instruction to fold duplicate events into a primary event."""

    primary: EventRecord
    duplicates: List[EventRecord]
    strategy: str
    resolutions: Dict[str, FieldResolution] = field(default_factory=dict)
    status: MergeStatus = MergeStatus.PROPOSED
    decision_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    executed_at: Optional[datetime] = None
    confidence: Optional[float] = None

    @property
    def duplicate_ids(self) -> List[str]:
        return [d.id for d in self.duplicates]

    @property
    def participant_ids(self) -> List[str]:
        return [self.primary.id] + self.duplicate_ids

    @property
    def unresolved_fields(self) -> List[str]:
        return [name for name, r in self.resolutions.items() if r.needs_manual_review]

    @property
    def is_terminal(self) -> bool:
        return self.status in (MergeStatus.EXECUTED, MergeStatus.REJECTED)

    def resolve_manually(self, field_name: str, value: Any, source_event_id: Optional[str] = None) -> None:
        """Supply the value for a field flagged for manual review."""
        if self.is_terminal:
            raise MergeExecutionError(
                f"Decision {self.decision_id} is {self.status.value} and can no longer change",
                decision_id=self.decision_id,
                error_code="decision_immutable",
            )
        resolution = self.resolutions.get(field_name)
        if resolution is None:
            raise KeyError(field_name)

        resolution.value = value
        resolution.needs_manual_review = False
        resolution.origin = "manual"
        resolution.confidence = 1.0
        resolution.source_event_id = source_event_id or self.primary.id

        if self.status == MergeStatus.BLOCKED and not self.unresolved_fields:
            self.status = MergeStatus.PROPOSED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "primary_event_id": self.primary.id,
            "duplicate_event_ids": self.duplicate_ids,
            "strategy": self.strategy,
            "status": self.status.value,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat(),
            "resolutions": {
                name: {k: v for k, v in r.to_dict().items() if k != "value"}
                for name, r in self.resolutions.items()
            },
        }


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class MergeResult:
    """Result of a merge execution."""

    success: bool
    merged_event: Optional[EventRecord] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    decision_id: Optional[str] = None
    history_id: Optional[str] = None
    quality_delta: float = 0.0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class MergeHistoryEntry:
    """Immutable audit record of one merge attempt."""

    sequence: int
    history_id: str
    decision_id: str
    primary_event_id: str
    duplicate_event_ids: Tuple[str, ...]
    strategy: str
    actor_id: str
    timestamp: datetime
    duration_ms: float
    quality_delta: float
    confidence: Optional[float]
    decision_snapshot: Mapping[str, Any] = field(default_factory=dict, compare=False)
    before_snapshot: Mapping[str, Any] = field(default_factory=dict, compare=False)
    after_snapshot: Optional[Mapping[str, Any]] = field(default=None, compare=False)
    success: bool = True
    error: Optional[str] = None

    @property
    def participant_ids(self) -> Tuple[str, ...]:
        return (self.primary_event_id,) + tuple(self.duplicate_event_ids)

    @property
    def changed_fields(self) -> List[str]:
        if not self.after_snapshot:
            return []
        before = self.before_snapshot or {}
        return sorted(
            k for k, v in self.after_snapshot.items()
            if k not in ("merged_from", "merged_at") and before.get(k) != v
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "history_id": self.history_id,
            "decision_id": self.decision_id,
            "primary_event_id": self.primary_event_id,
            "duplicate_event_ids": list(self.duplicate_event_ids),
            "strategy": self.strategy,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "quality_delta": self.quality_delta,
            "confidence": self.confidence,
            "decision_snapshot": dict(self.decision_snapshot),
            "before_snapshot": dict(self.before_snapshot),
            "after_snapshot": dict(self.after_snapshot) if self.after_snapshot is not None else None,
            "success": self.success,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MergeHistoryEntry":
        timestamp = parse_datetime(data.get("timestamp")) or datetime.now(timezone.utc)
        return cls(
            sequence=int(data.get("sequence", 0)),
            history_id=str(data["history_id"]),
            decision_id=str(data.get("decision_id", "")),
            primary_event_id=str(data["primary_event_id"]),
            duplicate_event_ids=tuple(data.get("duplicate_event_ids") or ()),
            strategy=str(data.get("strategy", "")),
            actor_id=str(data.get("actor_id", "system")),
            timestamp=timestamp,
            duration_ms=float(data.get("duration_ms") or 0.0),
            quality_delta=float(data.get("quality_delta") or 0.0),
            confidence=data.get("confidence"),
            decision_snapshot=data.get("decision_snapshot") or {},
            before_snapshot=data.get("before_snapshot") or {},
            after_snapshot=data.get("after_snapshot"),
            success=bool(data.get("success", True)),
            error=data.get("error"),
        )


@dataclass
class DuplicateCheckResult:
    """Decision-ready summary of a duplicate check."""

    is_duplicate: bool
    confidence: float
    matches: List[Match] = field(default_factory=list)
    duplicate_event_ids: List[str] = field(default_factory=list)
    primary_event_id: Optional[str] = None
    needs_review: bool = False
    recommendations: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    """Outcome of a bulk deduplication pass."""

    processed_count: int = 0
    duplicates_found: int = 0
    merges_completed: int = 0
    clusters: List[List[str]] = field(default_factory=list)
    merged_events: List[EventRecord] = field(default_factory=list)
    review_queue: List[MergeDecision] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    performance: Dict[str, Any] = field(default_factory=dict)
