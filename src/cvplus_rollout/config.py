"""Typed rollout configuration loaded from YAML.

Every section is a pydantic model with ``extra="forbid"`` so a typo or an
unrecognised option fails at load time instead of silently falling back to a
default.

Usage:
    from cvplus_rollout.config import load_config

    config = load_config("config/rollout.yaml")
    service = config.build_service("cv-analyzer")
    policy = config.policy_for_tier(service.tier)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from cvplus_rollout import constants
from cvplus_rollout.exceptions import ConfigurationError
from cvplus_rollout.models import HealthThresholds, RiskTier, Service, check_milestones

logger = logging.getLogger(__name__)

CONFIG_ENV_VARS = ("ROLLOUT_CONFIG_PATH", "CONFIG_PATH")


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TierPolicy(_Strict):
    """Schedule and gating for one risk tier."""

    milestones: List[int]
    poll_interval_seconds: float = Field(gt=0)
    monitoring_duration_seconds: float = Field(gt=0)
    requires_approval: bool = False
    approval_threshold: int = Field(default=constants.DEFAULT_APPROVAL_THRESHOLD, ge=0, le=100)
    approval_timeout_seconds: float = Field(
        default=constants.DEFAULT_APPROVAL_TIMEOUT_SECONDS, gt=0
    )

    @field_validator("milestones")
    @classmethod
    def _validate_milestones(cls, value: List[int]) -> List[int]:
        return check_milestones(value)

    @model_validator(mode="after")
    def _check(self) -> "TierPolicy":
        if self.monitoring_duration_seconds < self.poll_interval_seconds:
            raise ValueError("monitoring_duration_seconds must be >= poll_interval_seconds")
        return self

    @property
    def polls_per_hold(self) -> int:
        ratio = round(self.monitoring_duration_seconds / self.poll_interval_seconds, 6)
        return max(1, int(ratio))

    def gate_applies(self, milestone: int) -> bool:
        return self.requires_approval and milestone >= self.approval_threshold


def _default_tiers() -> Dict[RiskTier, TierPolicy]:
    return {
        RiskTier.LOW: TierPolicy(
            milestones=constants.LOW_RISK_MILESTONES,
            poll_interval_seconds=constants.DEFAULT_POLL_INTERVAL_SECONDS,
            monitoring_duration_seconds=constants.LOW_RISK_MONITORING_SECONDS,
        ),
        RiskTier.MEDIUM: TierPolicy(
            milestones=constants.MEDIUM_RISK_MILESTONES,
            poll_interval_seconds=constants.DEFAULT_POLL_INTERVAL_SECONDS,
            monitoring_duration_seconds=constants.MEDIUM_RISK_MONITORING_SECONDS,
        ),
        RiskTier.CRITICAL: TierPolicy(
            milestones=constants.CRITICAL_RISK_MILESTONES,
            poll_interval_seconds=constants.DEFAULT_POLL_INTERVAL_SECONDS,
            monitoring_duration_seconds=constants.CRITICAL_RISK_MONITORING_SECONDS,
            requires_approval=True,
        ),
    }


class MetricsSettings(_Strict):
    window_seconds: float = Field(default=constants.DEFAULT_METRICS_WINDOW_SECONDS, gt=0)
    call_timeout_seconds: float = Field(default=constants.DEFAULT_METRICS_TIMEOUT_SECONDS, gt=0)
    max_consecutive_misses: int = Field(default=constants.DEFAULT_MAX_CONSECUTIVE_MISSES, ge=1)


class TrafficSettings(_Strict):
    call_timeout_seconds: float = Field(default=constants.DEFAULT_TRAFFIC_TIMEOUT_SECONDS, gt=0)


class FirestoreSettings(_Strict):
    database: str = "(default)"
    credentials_path: Optional[str] = None
    flags_collection: str = constants.DEFAULT_FLAGS_COLLECTION
    flags_document: str = constants.DEFAULT_FLAGS_DOCUMENT


class NotificationSettings(_Strict):
    webhook_url: Optional[str] = None
    token: Optional[str] = None


class ServiceSettings(_Strict):
    """Registry entry for one migrated service."""

    tier: RiskTier
    phase: Optional[int] = Field(default=None, ge=1)
    milestones: Optional[List[int]] = None
    flag_name: Optional[str] = None

    @field_validator("milestones")
    @classmethod
    def _validate_milestones(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        return check_milestones(value) if value is not None else None


def _default_thresholds() -> HealthThresholds:
    return HealthThresholds(
        max_error_rate=constants.DEFAULT_MAX_ERROR_RATE,
        latency_multiplier=constants.DEFAULT_LATENCY_MULTIPLIER,
        min_success_rate=constants.DEFAULT_MIN_SUCCESS_RATE,
        min_sample_size=constants.DEFAULT_MIN_SAMPLE_SIZE,
    )


class RolloutConfig(_Strict):
    """Root configuration document."""

    database_path: Optional[str] = None
    thresholds: HealthThresholds = Field(default_factory=_default_thresholds)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    traffic: TrafficSettings = Field(default_factory=TrafficSettings)
    firestore: FirestoreSettings = Field(default_factory=FirestoreSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    tiers: Dict[RiskTier, TierPolicy] = Field(default_factory=_default_tiers)
    services: Dict[str, ServiceSettings] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_tiers(self) -> "RolloutConfig":
        missing = [tier.value for tier in RiskTier if tier not in self.tiers]
        if missing:
            raise ValueError(f"tiers missing required entries: {missing}")
        return self

    def policy_for_tier(self, tier: RiskTier) -> TierPolicy:
        return self.tiers[tier]

    def build_service(self, service_id: str, tier: Optional[RiskTier] = None) -> Service:
        """
        Build a fresh PENDING Service from the registry.

        Args:
            service_id: Registered service id
            tier: Tier override; required for services not in the registry

        Raises:
            ConfigurationError: If the service is unknown and no tier is given
        """
        entry = self.services.get(service_id)
        if entry is None and tier is None:
            raise ConfigurationError(
                f"Unknown service '{service_id}'. Add it under 'services' or pass a tier."
            )

        resolved_tier = tier or entry.tier
        milestones = (entry.milestones if entry else None) or self.tiers[resolved_tier].milestones
        return Service(
            service_id=service_id,
            tier=resolved_tier,
            milestones=list(milestones),
            phase=entry.phase if entry else None,
            flag_name=entry.flag_name if entry else None,
        )

    def services_in_phase(self, phase: int) -> List[str]:
        return sorted(sid for sid, entry in self.services.items() if entry.phase == phase)


def resolve_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """Explicit argument first, then ROLLOUT_CONFIG_PATH / CONFIG_PATH."""
    candidate = config_path
    if not candidate:
        for var in CONFIG_ENV_VARS:
            if os.getenv(var):
                candidate = os.getenv(var)
                break
    return Path(candidate).expanduser() if candidate else None


def load_config(config_path: Optional[str] = None) -> RolloutConfig:
    """
    Load and validate the rollout configuration.

    With no path (argument or env var) the built-in defaults are returned.

    Raises:
        ConfigurationError: If the file is missing, not valid YAML, or fails
            validation (unknown fields included).
    """
    path = resolve_config_path(config_path)
    if path is None:
        logger.info("No rollout config path set; using built-in defaults")
        return RolloutConfig()

    if not path.exists():
        raise ConfigurationError(f"Rollout config not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Rollout config {path} must be a mapping")

    try:
        config = RolloutConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid rollout config {path}: {exc}") from exc

    logger.info("Loaded rollout config from %s (%d services)", path, len(config.services))
    return config
