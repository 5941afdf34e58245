"""
Merge History Tracker

Append-only audit log of merge attempts with analytics, anomaly detection
and import/export. Storage is pluggable: an in-memory list for library use
and tests, or a SQLite file for a durable audit trail.
"""

import copy
import csv
import io
import json
import logging
import sqlite3
import threading
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

import structlog

from .errors import HistoryStoreError
from .logging_config import configure_audit_logging, get_audit_logger
from .models import EventRecord, MergeDecision, MergeHistoryEntry, parse_datetime

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "sequence", "history_id", "decision_id", "timestamp", "actor_id", "strategy",
    "primary_event_id", "duplicate_event_ids", "duration_ms", "quality_delta",
    "confidence", "success", "error",
]


class InMemoryHistoryStore:
    """History kept in process memory, ordered by timestamp then sequence."""

    name = "memory"

    def __init__(self):
        self._entries: List[MergeHistoryEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: MergeHistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[MergeHistoryEntry]:
        with self._lock:
            return sorted(self._entries, key=lambda e: (e.timestamp, e.sequence))

    def entries_for_event(self, event_id: str) -> List[MergeHistoryEntry]:
        return [e for e in self.entries() if event_id in e.participant_ids]

    def last_sequence(self) -> int:
        with self._lock:
            return max((e.sequence for e in self._entries), default=0)

    def has_entry(self, history_id: str) -> bool:
        with self._lock:
            return any(e.history_id == history_id for e in self._entries)

    def remove_before(self, cutoff: Optional[datetime]) -> int:
        with self._lock:
            before = len(self._entries)
            if cutoff is None:
                self._entries = []
            else:
                self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            return before - len(self._entries)


class SQLiteHistoryStore:
    """History persisted in a SQLite database with JSON snapshot columns."""

    name = "sqlite"

    def __init__(self, db_path: str = "merge_history.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self.init_database()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize merge history database: {e}")
            raise HistoryStoreError(f"Cannot open history database {db_path}: {e}", store=self.name) from e

    def init_database(self):
        with self._lock, self._conn:
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS merge_history (
                    sequence INTEGER PRIMARY KEY,
                    history_id TEXT UNIQUE NOT NULL,
                    decision_id TEXT NOT NULL,
                    primary_event_id TEXT NOT NULL,
                    duplicate_event_ids TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    duration_ms REAL NOT NULL,
                    quality_delta REAL NOT NULL,
                    confidence REAL,
                    success INTEGER NOT NULL,
                    error TEXT,
                    decision_snapshot TEXT NOT NULL,
                    before_snapshot TEXT NOT NULL,
                    after_snapshot TEXT
                )
            ''')
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS merge_participants (
                    sequence INTEGER NOT NULL,
                    event_id TEXT NOT NULL,
                    role TEXT NOT NULL
                )
            ''')
            self._conn.execute('CREATE INDEX IF NOT EXISTS idx_history_timestamp ON merge_history(timestamp)')
            self._conn.execute('CREATE INDEX IF NOT EXISTS idx_participant_event ON merge_participants(event_id)')

    def append(self, entry: MergeHistoryEntry) -> None:
        data = entry.to_dict()
        try:
            with self._lock, self._conn:
                self._conn.execute('''
                    INSERT INTO merge_history
                    (sequence, history_id, decision_id, primary_event_id, duplicate_event_ids,
                     strategy, actor_id, timestamp, duration_ms, quality_delta, confidence,
                     success, error, decision_snapshot, before_snapshot, after_snapshot)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    entry.sequence,
                    entry.history_id,
                    entry.decision_id,
                    entry.primary_event_id,
                    json.dumps(data["duplicate_event_ids"]),
                    entry.strategy,
                    entry.actor_id,
                    data["timestamp"],
                    entry.duration_ms,
                    entry.quality_delta,
                    entry.confidence,
                    1 if entry.success else 0,
                    entry.error,
                    json.dumps(data["decision_snapshot"], default=str),
                    json.dumps(data["before_snapshot"], default=str),
                    json.dumps(data["after_snapshot"], default=str) if entry.after_snapshot is not None else None,
                ))
                rows = [(entry.sequence, entry.primary_event_id, "primary")]
                rows += [(entry.sequence, dup, "duplicate") for dup in entry.duplicate_event_ids]
                self._conn.executemany(
                    'INSERT INTO merge_participants (sequence, event_id, role) VALUES (?, ?, ?)', rows
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to store merge history entry {entry.history_id}: {e}")
            raise HistoryStoreError(f"Cannot append history entry: {e}", store=self.name) from e

    def _rows_to_entries(self, rows) -> List[MergeHistoryEntry]:
        entries = []
        for row in rows:
            entries.append(MergeHistoryEntry.from_dict({
                "sequence": row[0],
                "history_id": row[1],
                "decision_id": row[2],
                "primary_event_id": row[3],
                "duplicate_event_ids": json.loads(row[4]),
                "strategy": row[5],
                "actor_id": row[6],
                "timestamp": row[7],
                "duration_ms": row[8],
                "quality_delta": row[9],
                "confidence": row[10],
                "success": bool(row[11]),
                "error": row[12],
                "decision_snapshot": json.loads(row[13]),
                "before_snapshot": json.loads(row[14]),
                "after_snapshot": json.loads(row[15]) if row[15] else None,
            }))
        return entries

    _SELECT = '''
        SELECT sequence, history_id, decision_id, primary_event_id, duplicate_event_ids,
               strategy, actor_id, timestamp, duration_ms, quality_delta, confidence,
               success, error, decision_snapshot, before_snapshot, after_snapshot
        FROM merge_history
    '''

    def entries(self) -> List[MergeHistoryEntry]:
        try:
            with self._lock:
                rows = self._conn.execute(self._SELECT + ' ORDER BY timestamp, sequence').fetchall()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Cannot read history: {e}", store=self.name) from e
        return self._rows_to_entries(rows)

    def entries_for_event(self, event_id: str) -> List[MergeHistoryEntry]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    self._SELECT
                    + ' WHERE sequence IN (SELECT sequence FROM merge_participants WHERE event_id = ?)'
                    + ' ORDER BY timestamp, sequence',
                    (event_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Cannot read history for {event_id}: {e}", store=self.name) from e
        return self._rows_to_entries(rows)

    def last_sequence(self) -> int:
        with self._lock:
            row = self._conn.execute('SELECT MAX(sequence) FROM merge_history').fetchone()
        return row[0] or 0

    def has_entry(self, history_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                'SELECT 1 FROM merge_history WHERE history_id = ?', (history_id,)
            ).fetchone()
        return row is not None

    def remove_before(self, cutoff: Optional[datetime]) -> int:
        try:
            with self._lock, self._conn:
                if cutoff is None:
                    cursor = self._conn.execute('DELETE FROM merge_history')
                    self._conn.execute('DELETE FROM merge_participants')
                else:
                    # Timestamps are stored as UTC ISO strings, which sort chronologically
                    cutoff_text = cutoff.astimezone(timezone.utc).isoformat()
                    self._conn.execute(
                        'DELETE FROM merge_participants WHERE sequence IN '
                        '(SELECT sequence FROM merge_history WHERE timestamp < ?)', (cutoff_text,)
                    )
                    cursor = self._conn.execute(
                        'DELETE FROM merge_history WHERE timestamp < ?', (cutoff_text,)
                    )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Cannot clear history: {e}", store=self.name) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _freeze(snapshot: Optional[Dict[str, Any]]):
    if snapshot is None:
        return None
    return MappingProxyType(copy.deepcopy(dict(snapshot)))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MergeHistoryTracker:
    """
    Records merge decisions and outcomes for audit and analytics.

    Entries are immutable once appended and carry a monotonically increasing
    sequence number; ``history_id`` is derived from it so identifiers sort
    in creation order.
    """

    def __init__(self, store=None, slow_merge_ms: float = 1000.0,
                 low_confidence_threshold: float = 0.6):
        self.store = store or InMemoryHistoryStore()
        self.slow_merge_ms = slow_merge_ms
        self.low_confidence_threshold = low_confidence_threshold
        self._lock = threading.Lock()
        self._sequence = self.store.last_sequence()

        if not structlog.is_configured():
            configure_audit_logging()
        self.audit = get_audit_logger(component="merge_history")

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _append(self, **fields) -> MergeHistoryEntry:
        with self._lock:
            sequence = self._next_sequence()
            history_id = f"merge_{sequence:08d}"
            if self.store.has_entry(history_id):
                # Taken by an imported entry
                history_id = f"{history_id}_{uuid.uuid4().hex[:6]}"
            entry = MergeHistoryEntry(
                sequence=sequence,
                history_id=history_id,
                timestamp=datetime.now(timezone.utc),
                **fields,
            )
            self.store.append(entry)
        return entry

    def record_merge(self, decision: MergeDecision, before_event: EventRecord,
                     after_event: EventRecord, actor_id: str, duration_ms: float,
                     quality_delta: float) -> str:
        """Append a successful merge and return its history id."""
        entry = self._append(
            decision_id=decision.decision_id,
            primary_event_id=decision.primary.id,
            duplicate_event_ids=tuple(decision.duplicate_ids),
            strategy=decision.strategy,
            actor_id=actor_id,
            duration_ms=float(duration_ms),
            quality_delta=float(quality_delta),
            confidence=decision.confidence,
            decision_snapshot=_freeze(decision.snapshot()),
            before_snapshot=_freeze(before_event.snapshot()),
            after_snapshot=_freeze(after_event.snapshot()),
            success=True,
        )
        self.audit.info(
            "merge_recorded",
            history_id=entry.history_id,
            primary_event_id=entry.primary_event_id,
            duplicate_event_ids=list(entry.duplicate_event_ids),
            strategy=entry.strategy,
            actor_id=actor_id,
            quality_delta=round(entry.quality_delta, 4),
            duration_ms=round(entry.duration_ms, 3),
        )
        return entry.history_id

    def record_failure(self, decision: MergeDecision, actor_id: str, error: str,
                       duration_ms: float = 0.0) -> str:
        """Append a failed merge attempt and return its history id."""
        entry = self._append(
            decision_id=decision.decision_id,
            primary_event_id=decision.primary.id,
            duplicate_event_ids=tuple(decision.duplicate_ids),
            strategy=decision.strategy,
            actor_id=actor_id,
            duration_ms=float(duration_ms),
            quality_delta=0.0,
            confidence=decision.confidence,
            decision_snapshot=_freeze(decision.snapshot()),
            before_snapshot=_freeze(decision.primary.snapshot()),
            after_snapshot=None,
            success=False,
            error=error,
        )
        self.audit.warning(
            "merge_failed",
            history_id=entry.history_id,
            primary_event_id=entry.primary_event_id,
            actor_id=actor_id,
            error=error,
        )
        return entry.history_id

    def get_event_history(self, event_id: str, include_failures: bool = True) -> List[MergeHistoryEntry]:
        """Entries where the event was primary or duplicate, oldest first."""
        entries = self.store.entries_for_event(event_id)
        if not include_failures:
            entries = [e for e in entries if e.success]
        return entries

    def consumed_by(self, event_id: str) -> Optional[str]:
        """Primary id an event was folded into by a successful merge, if any."""
        for entry in self.store.entries_for_event(event_id):
            if entry.success and event_id in entry.duplicate_event_ids:
                return entry.primary_event_id
        return None

    def merged_into(self, primary_id: str) -> Set[str]:
        """Every event id recorded as merged into ``primary_id``."""
        merged: Set[str] = set()
        for entry in self.store.entries_for_event(primary_id):
            if entry.success and entry.primary_event_id == primary_id:
                merged.update(entry.duplicate_event_ids)
                if entry.after_snapshot:
                    merged.update(entry.after_snapshot.get("merged_from") or [])
        return merged

    def _filtered(self, date_range: Optional[Tuple[Any, Any]] = None,
                  strategy: Optional[str] = None) -> List[MergeHistoryEntry]:
        entries = self.store.entries()
        if date_range:
            start = parse_datetime(date_range[0]) if date_range[0] is not None else None
            end = parse_datetime(date_range[1]) if date_range[1] is not None else None
            entries = [
                e for e in entries
                if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
            ]
        if strategy:
            entries = [e for e in entries if e.strategy == strategy]
        return entries

    def get_analytics(self, date_range: Optional[Tuple[Any, Any]] = None,
                      strategy: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate statistics over stored entries; read-only.

        Args:
            date_range: Optional (start, end), either end may be None
            strategy: Restrict to one merge strategy
        """
        entries = self._filtered(date_range, strategy)
        merges = [e for e in entries if e.success]

        by_strategy: Dict[str, List[MergeHistoryEntry]] = defaultdict(list)
        for entry in entries:
            by_strategy[entry.strategy].append(entry)

        strategy_breakdown = {}
        for name, group in sorted(by_strategy.items()):
            successes = [e for e in group if e.success]
            strategy_breakdown[name] = {
                "count": len(successes),
                "attempts": len(group),
                "success_rate": len(successes) / len(group),
                "avg_quality_delta": _mean([e.quality_delta for e in successes]),
                "avg_duration": _mean([e.duration_ms for e in successes]),
            }

        field_impact = Counter()
        for entry in merges:
            field_impact.update(entry.changed_fields)

        merge_frequency = Counter(e.timestamp.date().isoformat() for e in merges)

        return {
            "merge_count": len(merges),
            "failed_count": len(entries) - len(merges),
            "avg_quality_delta": _mean([e.quality_delta for e in merges]),
            "avg_duration": _mean([e.duration_ms for e in merges]),
            "strategy_breakdown": strategy_breakdown,
            "field_impact": dict(field_impact.most_common()),
            "merge_frequency": dict(sorted(merge_frequency.items())),
        }

    def identify_quality_issues(self) -> List[Dict[str, Any]]:
        """Flag merges that deserve a second look."""
        entries = self.store.entries()
        merges = [e for e in entries if e.success]
        mean_duration = _mean([e.duration_ms for e in merges])
        issues = []

        for entry in entries:
            if not entry.success:
                issues.append({
                    "type": "failed_merge",
                    "severity": "medium",
                    "history_id": entry.history_id,
                    "detail": entry.error or "merge failed",
                })
                continue

            if entry.quality_delta < 0:
                issues.append({
                    "type": "quality_degradation",
                    "severity": "high",
                    "history_id": entry.history_id,
                    "detail": f"quality delta {entry.quality_delta:.3f}",
                })

            slow = entry.duration_ms > self.slow_merge_ms or (
                len(merges) >= 5 and mean_duration > 0 and entry.duration_ms > 3 * mean_duration
            )
            if slow:
                issues.append({
                    "type": "slow_merge",
                    "severity": "low",
                    "history_id": entry.history_id,
                    "detail": f"took {entry.duration_ms:.1f}ms (mean {mean_duration:.1f}ms)",
                })

            if entry.confidence is not None and entry.confidence < self.low_confidence_threshold:
                issues.append({
                    "type": "low_confidence",
                    "severity": "medium",
                    "history_id": entry.history_id,
                    "detail": f"confidence {entry.confidence:.2f}",
                })

        by_strategy: Dict[str, List[float]] = defaultdict(list)
        for entry in merges:
            by_strategy[entry.strategy].append(entry.quality_delta)
        for name, deltas in sorted(by_strategy.items()):
            if len(deltas) >= 3 and _mean(deltas) < 0:
                issues.append({
                    "type": "strategy_ineffectiveness",
                    "severity": "medium",
                    "history_id": None,
                    "detail": f"strategy '{name}' averages {_mean(deltas):.3f} quality delta",
                })

        return issues

    def generate_audit_report(self) -> Dict[str, Any]:
        """Analytics plus anomalies, with a plain-text summary."""
        analytics = self.get_analytics()
        anomalies = self.identify_quality_issues()
        statistics = self.get_statistics()

        recommendations = []
        issue_types = Counter(a["type"] for a in anomalies)
        if issue_types["quality_degradation"]:
            recommendations.append("Review merges that reduced record quality and adjust field strategies")
        if issue_types["slow_merge"]:
            recommendations.append("Investigate slow merges; consider smaller batches")
        if issue_types["low_confidence"]:
            recommendations.append("Raise the overall threshold or require manual review for low-confidence merges")
        if issue_types["failed_merge"]:
            recommendations.append("Inspect failed merge attempts and re-fetch stale events before retrying")
        if issue_types["strategy_ineffectiveness"]:
            recommendations.append("Replace merge strategies with a negative average quality delta")

        lines = [
            "Merge Audit Report",
            f"Merges: {analytics['merge_count']} (failed attempts: {analytics['failed_count']})",
            f"Average quality delta: {analytics['avg_quality_delta']:+.3f}",
            f"Average duration: {analytics['avg_duration']:.1f}ms",
        ]
        for name, breakdown in analytics["strategy_breakdown"].items():
            lines.append(
                f"  {name}: {breakdown['count']} merges, "
                f"avg delta {breakdown['avg_quality_delta']:+.3f}"
            )
        lines.append(f"Anomalies: {len(anomalies)}")
        for anomaly in anomalies:
            lines.append(f"  [{anomaly['severity']}] {anomaly['type']}: {anomaly['detail']}")

        return {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "summary": analytics,
            "statistics": statistics,
            "anomalies": anomalies,
            "recommendations": recommendations,
            "text": "\n".join(lines),
        }

    def get_statistics(self) -> Dict[str, Any]:
        entries = self.store.entries()
        events = set()
        for entry in entries:
            events.update(entry.participant_ids)
        return {
            "total_entries": len(entries),
            "successful_merges": sum(1 for e in entries if e.success),
            "failed_merges": sum(1 for e in entries if not e.success),
            "unique_events": len(events),
            "actors": dict(Counter(e.actor_id for e in entries)),
            "first_entry": entries[0].timestamp.isoformat() if entries else None,
            "last_entry": entries[-1].timestamp.isoformat() if entries else None,
            "store": self.store.name,
        }

    def export_history(self, format: str = "json") -> str:
        """Serialize all entries as JSON or CSV.

        Raises:
            ValueError: For an unsupported format
        """
        entries = self.store.entries()
        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, default=str)

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            for entry in entries:
                row = {key: value for key, value in entry.to_dict().items() if key in CSV_COLUMNS}
                row["duplicate_event_ids"] = ";".join(entry.duplicate_event_ids)
                writer.writerow(row)
            return buffer.getvalue()

        raise ValueError(f"Unsupported export format '{format}', expected 'json' or 'csv'")

    def import_history(self, data: Union[str, List[Dict[str, Any]]]) -> int:
        """Append entries exported by ``export_history(format="json")``.

        Entries already present (same history id and decision id) are
        skipped; an entry whose history id is taken by a different decision
        gets a suffixed id. Imported entries are numbered after the current
        last sequence; reads order by timestamp, so older imports sort first.

        Returns:
            Number of entries imported
        """
        records = json.loads(data) if isinstance(data, str) else list(data)
        records = sorted(records, key=lambda r: int(r.get("sequence", 0)))

        imported = 0
        with self._lock:
            known = {e.history_id: e.decision_id for e in self.store.entries()}
            for record in records:
                original = MergeHistoryEntry.from_dict(record)
                history_id = original.history_id
                if history_id in known:
                    if known[history_id] == original.decision_id:
                        continue
                    history_id = f"{history_id}_{uuid.uuid4().hex[:6]}"
                known[history_id] = original.decision_id

                entry = MergeHistoryEntry(
                    sequence=self._next_sequence(),
                    history_id=history_id,
                    decision_id=original.decision_id,
                    primary_event_id=original.primary_event_id,
                    duplicate_event_ids=original.duplicate_event_ids,
                    strategy=original.strategy,
                    actor_id=original.actor_id,
                    timestamp=original.timestamp,
                    duration_ms=original.duration_ms,
                    quality_delta=original.quality_delta,
                    confidence=original.confidence,
                    decision_snapshot=_freeze(dict(original.decision_snapshot)),
                    before_snapshot=_freeze(dict(original.before_snapshot)),
                    after_snapshot=_freeze(dict(original.after_snapshot)) if original.after_snapshot else None,
                    success=original.success,
                    error=original.error,
                )
                self.store.append(entry)
                imported += 1

        logger.info(f"Imported {imported} merge history entries")
        return imported

    def clear_history(self, older_than: Optional[datetime] = None) -> int:
        """Remove entries older than ``older_than`` (all entries when None)."""
        cutoff = parse_datetime(older_than) if older_than is not None else None
        removed = self.store.remove_before(cutoff)
        self.audit.info("history_cleared", removed=removed, older_than=str(cutoff) if cutoff else None)
        return removed
