"""Persistence — append-only event log."""

from yieldshare.persistence.event_log import EventKind, EventLog, EventRecord, EventRecorder

__all__ = ["EventKind", "EventLog", "EventRecord", "EventRecorder"]
