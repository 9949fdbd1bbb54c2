"""Append-only event log: the audit record of every pool action.

Every successful mutating call produces one or more event records. Events
are immutable once written. Components do not write to the log directly:
they emit into an EventBuffer, and the service commits the buffer only
when the whole call succeeds. A rejected call therefore leaves no events
behind, exactly like it leaves no state behind.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of pool events."""
    # Ledger
    CONTRIBUTION_RECEIVED = "contribution_received"
    CONTRIBUTION_WITHDRAWN = "contribution_withdrawn"
    # Receiver set
    RECEIVER_ENTERED = "receiver_entered"
    RECEIVER_LEFT = "receiver_left"
    RECEIVER_EMERGENCY_EXIT = "receiver_emergency_exit"
    # Distribution
    DISTRIBUTION_STARTED = "distribution_started"
    PAYOUT_DELIVERED = "payout_delivered"
    PAYOUT_FAILED = "payout_failed"
    BATCH_PROCESSED = "batch_processed"
    DISTRIBUTION_FINALIZED = "distribution_finalized"
    DISTRIBUTION_STOPPED = "distribution_stopped"
    POOL_DISTRIBUTED = "pool_distributed"
    DISTRIBUTION_ATTEMPTED = "distribution_attempted"
    DISTRIBUTION_WINDOW_OVERRIDDEN = "distribution_window_overridden"
    # Failed transfers
    RETRY_SUCCEEDED = "retry_succeeded"
    RETRY_FAILED = "retry_failed"
    AUTO_RETRY_COMPLETED = "auto_retry_completed"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the pool log.

    The event_hash is computed at creation time over the canonical JSON
    form and is re-verified whenever the log is loaded from disk.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str  # SHA-256 of canonical JSON

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        clean = _jsonable(payload)
        digest = _canonical_hash(event_id, event_kind.value, ts_str, actor_id, clean)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=clean,
            event_hash=digest,
        )


@dataclass(frozen=True)
class PendingEvent:
    """An event emitted during a call, not yet committed."""
    kind: EventKind
    actor_id: str
    payload: dict[str, Any]
    timestamp_utc: datetime


@dataclass
class EventBuffer:
    """Collects events for the call in flight."""
    _pending: list[PendingEvent] = field(default_factory=list)

    def emit(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        self._pending.append(PendingEvent(kind, actor_id, payload, now))

    def drain(self) -> list[PendingEvent]:
        pending, self._pending = self._pending, []
        return pending

    def discard(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    The log can be persisted to a JSONL file (one JSON object per line)
    and loaded back for recovery.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")

        self._events.append(event)
        self._event_ids.add(event.event_id)

        if self._storage_path:
            self._append_to_file(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def counts_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self._events:
            counts[e.event_kind.value] = counts.get(e.event_kind.value, 0) + 1
        return counts

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs (replay protection on recovery).
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)


def _canonical_hash(
    event_id: str,
    kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


def _jsonable(value: Any) -> Any:
    """Decimals become strings, datetimes ISO strings; containers recurse."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
