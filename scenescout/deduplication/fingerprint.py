"""
Fingerprint and Similarity Engine

Turns event records into normalized fingerprints and scores pairs of
fingerprints across five dimensions: title, venue, location, date and
price (the "semantic" dimension).
"""

import hashlib
import json
import logging
import math
import re
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .cache import FingerprintCache
from .config import DedupConfig
from .errors import DeduplicationError
from .models import EventRecord, Fingerprint, SimilarityScore
from .string_similarity import string_similarity

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

EARTH_RADIUS_METERS = 6371000.0

VENUE_FILLER_WORDS = {"the", "hall", "club", "theatre", "theater", "venue", "bar", "lounge"}

PRICE_TIERS = (
    ("budget", 20.0),
    ("moderate", 50.0),
    ("premium", 100.0),
)

# Credit for two paid events in different price tiers
PAID_TIER_MISMATCH_SCORE = 0.3
NEUTRAL_SCORE = 0.5

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")

_HASHED_FIELDS = (
    "title", "venue_name", "city", "latitude", "longitude", "start_time",
    "price_min", "price_max", "is_free", "category",
)


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    text = _PUNCTUATION_RE.sub("", str(text).lower()).replace("_", " ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_venue(name: Optional[str]) -> str:
    """Normalize a venue name, dropping filler words when anything else remains."""
    normalized = normalize_text(name)
    tokens = normalized.split()
    kept = [t for t in tokens if t not in VENUE_FILLER_WORDS]
    return " ".join(kept) if kept else normalized


def tokenize(text: str) -> Tuple[str, ...]:
    return tuple(t for t in text.split() if len(t) > 2)


def price_tier(event: EventRecord) -> str:
    """Bucket an event's price into free, budget, moderate, premium or luxury."""
    if event.is_free:
        return "free"

    price = event.price_min if event.price_min is not None else event.price_max
    if price is None:
        return UNKNOWN
    if price <= 0 and not event.price_max:
        return "free"

    for tier, ceiling in PRICE_TIERS:
        if price <= ceiling:
            return tier
    return "luxury"


def haversine_meters(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance between two (lat, lng) pairs in meters."""
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def content_hash(event: EventRecord) -> str:
    """Hash of the fields that feed the fingerprint."""
    payload = {name: getattr(event, name, None) for name in _HASHED_FIELDS}
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def coerce_event(event: Union[EventRecord, Mapping[str, Any]]) -> EventRecord:
    """Accept an ``EventRecord`` or a plain mapping of its fields."""
    if isinstance(event, EventRecord):
        return event
    try:
        return EventRecord.model_validate(event)
    except ValidationError as e:
        raise DeduplicationError(
            f"Malformed event record: {e.errors()[0].get('msg')}",
            error_code="invalid_event",
            context={"event": repr(event)[:200]},
        ) from e


class FingerprintEngine:
    """
    Computes fingerprints and multi-dimensional similarity scores.

    Fingerprint generation is deterministic and tolerant of bad data: an
    unparseable date becomes the ``"unknown"`` sentinel and scoring degrades
    instead of raising.
    """

    def __init__(self, config: Optional[DedupConfig] = None,
                 cache: Optional[FingerprintCache] = None):
        self.config = config or DedupConfig()
        self.cache = cache

        self.stats = {
            "fingerprints_generated": 0,
            "comparisons": 0,
            "unknown_dates": 0,
        }

    def generate_fingerprint(self, event: Union[EventRecord, Mapping[str, Any]]) -> Fingerprint:
        """Build the normalized fingerprint of an event.

        Raises:
            DeduplicationError: Only when the input is not an event record at all
        """
        record = coerce_event(event)
        digest = content_hash(record)

        if self.cache is not None:
            key = ("fingerprint", record.id, digest)
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            fingerprint = self._build_fingerprint(record, digest)
            self.cache.set(key, fingerprint)
            return fingerprint

        return self._build_fingerprint(record, digest)

    def _build_fingerprint(self, event: EventRecord, digest: str) -> Fingerprint:
        title = normalize_text(event.title)
        start = event.start
        if start is None:
            self.stats["unknown_dates"] += 1
            if event.start_time not in (None, ""):
                logger.debug(f"Unparseable start_time on event {event.id}: {event.start_time!r}")

        self.stats["fingerprints_generated"] += 1

        return Fingerprint(
            event_id=event.id,
            title=title,
            title_tokens=tokenize(title),
            venue=normalize_venue(event.venue_name),
            coordinates=self._round_coordinates(event.latitude, event.longitude),
            date_key=start.date().isoformat() if start else UNKNOWN,
            start=start,
            price_tier=price_tier(event),
            category=normalize_text(event.category),
            city=normalize_text(event.city),
            content_hash=digest,
        )

    def _round_coordinates(self, lat: Optional[float], lng: Optional[float]) -> Optional[Tuple[float, float]]:
        if lat is None or lng is None:
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            return None
        precision = self.config.matching.coordinate_precision
        return (round(lat, precision), round(lng, precision))

    def calculate_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint) -> SimilarityScore:
        """Score two fingerprints on every dimension."""
        self.stats["comparisons"] += 1

        if self.cache is not None:
            key = ("similarity", fp_a.event_id, fp_a.content_hash, fp_b.event_id, fp_b.content_hash)
            return self.cache.get_or_compute(key, lambda: self._score(fp_a, fp_b))

        return self._score(fp_a, fp_b)

    def compare(self, event_a, event_b) -> SimilarityScore:
        return self.calculate_similarity(
            self.generate_fingerprint(event_a), self.generate_fingerprint(event_b)
        )

    def _score(self, fp_a: Fingerprint, fp_b: Fingerprint) -> SimilarityScore:
        venue = self.venue_similarity(fp_a, fp_b)
        return SimilarityScore(
            title=self.title_similarity(fp_a, fp_b),
            venue=venue,
            location=self.location_similarity(fp_a, fp_b, venue),
            date=self.date_similarity(fp_a, fp_b),
            semantic=self.price_similarity(fp_a, fp_b),
            weights=self.config.weights.as_dict(),
        )

    def _strings(self, a: str, b: str) -> float:
        return string_similarity(a, b, self.config.algorithms.string_matching)

    def title_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint) -> float:
        if not fp_a.title or not fp_b.title:
            return 0.0
        if fp_a.title == fp_b.title:
            return 1.0
        return self._strings(fp_a.title, fp_b.title)

    def venue_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint) -> float:
        if not fp_a.venue or not fp_b.venue:
            return NEUTRAL_SCORE
        if fp_a.venue == fp_b.venue:
            return 1.0
        return self._strings(fp_a.venue, fp_b.venue)

    def location_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint,
                            venue_score: Optional[float] = None) -> float:
        """Distance-based score, falling back to venue names, then to neutral."""
        if self.config.algorithms.location_matching and fp_a.coordinates and fp_b.coordinates:
            return self._distance_score(haversine_meters(fp_a.coordinates, fp_b.coordinates))

        if fp_a.venue and fp_b.venue:
            return venue_score if venue_score is not None else self.venue_similarity(fp_a, fp_b)

        return NEUTRAL_SCORE

    def _distance_score(self, meters: float) -> float:
        radius = self.config.matching.max_distance_meters
        if meters >= radius:
            return 0.0
        if self.config.matching.distance_falloff == "linear":
            return 1.0 - meters / radius

        # Inverse falloff rescaled to reach exactly 0 at the radius
        scale = radius / 10.0
        floor = 1.0 / (1.0 + radius / scale)
        return (1.0 / (1.0 + meters / scale) - floor) / (1.0 - floor)

    def date_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint) -> float:
        if fp_a.date_key == UNKNOWN or fp_b.date_key == UNKNOWN:
            return 0.0
        if fp_a.date_key == fp_b.date_key:
            return 1.0
        if not self.config.algorithms.fuzzy_date:
            return 0.0

        days = abs((fp_a.start - fp_b.start).total_seconds()) / 86400.0
        return max(0.0, 1.0 - days / self.config.matching.date_horizon_days)

    def price_similarity(self, fp_a: Fingerprint, fp_b: Fingerprint) -> float:
        if not self.config.algorithms.semantic_matching:
            return NEUTRAL_SCORE

        tier_a, tier_b = fp_a.price_tier, fp_b.price_tier
        if tier_a == UNKNOWN or tier_b == UNKNOWN:
            return NEUTRAL_SCORE
        if tier_a == tier_b:
            return 1.0
        if "free" in (tier_a, tier_b):
            return 0.0
        return PAID_TIER_MISMATCH_SCORE

    def distance_meters(self, fp_a: Fingerprint, fp_b: Fingerprint) -> Optional[float]:
        if fp_a.coordinates and fp_b.coordinates:
            return haversine_meters(fp_a.coordinates, fp_b.coordinates)
        return None

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)
