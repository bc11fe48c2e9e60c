"""Rollout persistence."""

from cvplus_rollout.storage.record_store import RecordStore

__all__ = ["RecordStore"]
