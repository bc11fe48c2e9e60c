"""Rollout state machine and controller."""
