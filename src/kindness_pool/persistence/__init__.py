"""Audit persistence: append-only event log."""

from kindness_pool.persistence.event_log import (
    EventBuffer,
    EventKind,
    EventLog,
    EventRecord,
)

__all__ = ["EventBuffer", "EventKind", "EventLog", "EventRecord"]
