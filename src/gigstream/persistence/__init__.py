"""Persistence — transactional state store, keyed locks, and the audit log."""

from gigstream.persistence.event_log import EventLog, EventRecord
from gigstream.persistence.locks import KeyedLocks
from gigstream.persistence.state_store import StateStore

__all__ = ["EventLog", "EventRecord", "KeyedLocks", "StateStore"]
