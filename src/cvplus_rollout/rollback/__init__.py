"""Rollback execution."""

from cvplus_rollout.rollback.executor import RollbackExecutor

__all__ = ["RollbackExecutor"]
