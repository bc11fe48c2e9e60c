"""
Pydantic models for services, health snapshots and the rollout record log.

Records and rollback events are persisted to SQLite; ``to_row`` /
``from_row`` convert between the models and flat database rows.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_milestones(value: List[int]) -> List[int]:
    """Milestones must be non-empty, within 1..100 and strictly increasing."""
    if not value:
        raise ValueError("milestones must not be empty")
    if any(m <= 0 or m > 100 for m in value):
        raise ValueError("milestones must be within 1..100")
    if any(b <= a for a, b in zip(value, value[1:])):
        raise ValueError("milestones must be strictly increasing")
    return value


class RiskTier(str, Enum):
    """
    Risk classification of a migrated service.

    The tier selects the milestone schedule, the monitoring duration and
    whether manual approval gates apply at high milestones.
    """

    LOW = "low"
    MEDIUM = "medium"
    CRITICAL = "critical"


class RolloutState(str, Enum):
    """
    State of a rollout run.

    Lifecycle: pending → advancing → holding → advancing(next) | rolled_back | completed

    - PENDING: Run created, no traffic moved yet
    - ADVANCING: Setting traffic to the current milestone
    - HOLDING: Monitoring health at the current milestone
    - ROLLED_BACK: Terminal, traffic reverted to 0%
    - COMPLETED: Terminal, last milestone held healthy
    """

    PENDING = "PENDING"
    ADVANCING = "ADVANCING"
    HOLDING = "HOLDING"
    ROLLED_BACK = "ROLLED_BACK"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


TERMINAL_STATES = frozenset({RolloutState.ROLLED_BACK, RolloutState.COMPLETED})
ACTIVE_STATES = frozenset({RolloutState.ADVANCING, RolloutState.HOLDING})


class ViolationKind(str, Enum):
    """Threshold violated by a health snapshot."""

    ERROR_RATE = "ERROR_RATE"
    LATENCY = "LATENCY"
    SUCCESS_RATE = "SUCCESS_RATE"


class VerdictWarning(str, Enum):
    """Non-blocking verdict annotation."""

    LOW_SAMPLE = "LOW_SAMPLE"


class TransitionReason(str, Enum):
    """
    Reason attached to every RolloutRecord.

    Progress reasons (STARTED, TRAFFIC_SET, HOLD_PASSED, APPROVED, COMPLETED)
    move the run forward; every other value ends it in ROLLED_BACK.
    """

    STARTED = "STARTED"
    TRAFFIC_SET = "TRAFFIC_SET"
    HOLD_PASSED = "HOLD_PASSED"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    ERROR_RATE = "ERROR_RATE"
    LATENCY = "LATENCY"
    SUCCESS_RATE = "SUCCESS_RATE"
    TRAFFIC_UPDATE_FAILED = "TRAFFIC_UPDATE_FAILED"
    METRICS_UNAVAILABLE = "METRICS_UNAVAILABLE"
    APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
    CANCELLED = "CANCELLED"
    EXTERNAL_DEPENDENCY_ERROR = "EXTERNAL_DEPENDENCY_ERROR"


# Rollback reasons caused by a collaborator rather than by service health
DEPENDENCY_FAILURE_REASONS = frozenset(
    {
        TransitionReason.TRAFFIC_UPDATE_FAILED,
        TransitionReason.METRICS_UNAVAILABLE,
        TransitionReason.EXTERNAL_DEPENDENCY_ERROR,
    }
)


class RollbackScope(str, Enum):
    SERVICE = "service"
    GLOBAL = "global"


class RollbackOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class CommandType(str, Enum):
    """Operator command delivered to the process that owns a run."""

    APPROVE = "approve"
    CANCEL = "cancel"


class HealthSnapshot(BaseModel):
    """Point-in-time health metrics for one service. Immutable once captured."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    error_rate: float = Field(ge=0.0, le=1.0, description="Failed requests / total requests")
    latency_ms: float = Field(ge=0.0, description="Average response latency in milliseconds")
    success_rate: float = Field(ge=0.0, le=1.0, description="Successful user actions / total")
    request_volume: int = Field(ge=0, description="Requests observed in the window")


class HealthThresholds(BaseModel):
    """Per-deployment health limits, compared against the run's baseline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_error_rate: float = Field(ge=0.0, le=1.0)
    latency_multiplier: float = Field(gt=0.0)
    min_success_rate: float = Field(ge=0.0, le=1.0)
    min_sample_size: int = Field(default=0, ge=0)


class Verdict(BaseModel):
    """Result of evaluating one snapshot against the baseline and thresholds."""

    model_config = ConfigDict(frozen=True)

    healthy: bool
    violations: List[ViolationKind] = Field(default_factory=list)
    warnings: List[VerdictWarning] = Field(default_factory=list)


class Service(BaseModel):
    """
    A service under rollout.

    ``state`` and ``milestone_index`` are owned by the RolloutStateMachine
    for the duration of a run; nothing else mutates them.
    """

    service_id: str
    tier: RiskTier
    milestones: List[int]
    milestone_index: int = 0
    state: RolloutState = RolloutState.PENDING
    phase: Optional[int] = None
    flag_name: Optional[str] = None

    @field_validator("milestones")
    @classmethod
    def _validate_milestones(cls, value: List[int]) -> List[int]:
        return check_milestones(value)

    @property
    def current_milestone(self) -> int:
        return self.milestones[self.milestone_index]

    @property
    def is_last_milestone(self) -> bool:
        return self.milestone_index == len(self.milestones) - 1


class RolloutRecord(BaseModel):
    """One entry in the append-only transition log of a rollout run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    service_id: str
    seq: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    from_state: RolloutState
    to_state: RolloutState
    milestone: Optional[int] = None
    reason: TransitionReason
    snapshot: Optional[HealthSnapshot] = None
    detail: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "service_id": self.service_id,
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "milestone": self.milestone,
            "reason": self.reason.value,
            "snapshot": self.snapshot.model_dump_json() if self.snapshot else None,
            "detail": self.detail,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RolloutRecord":
        snapshot = row.get("snapshot")
        return cls(
            run_id=row["run_id"],
            service_id=row["service_id"],
            seq=row["seq"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            from_state=RolloutState(row["from_state"]),
            to_state=RolloutState(row["to_state"]),
            milestone=row.get("milestone"),
            reason=TransitionReason(row["reason"]),
            snapshot=HealthSnapshot.model_validate_json(snapshot) if snapshot else None,
            detail=row.get("detail"),
        )


class RollbackEvent(BaseModel):
    """Outcome of one rollback attempt. Created only by the RollbackExecutor."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    service_id: str
    reason: str
    scope: RollbackScope
    timestamp: datetime = Field(default_factory=utcnow)
    outcome: RollbackOutcome
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RollbackOutcome.SUCCESS

    def to_row(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "service_id": self.service_id,
            "reason": self.reason,
            "scope": self.scope.value,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RollbackEvent":
        return cls(
            event_id=row["event_id"],
            service_id=row["service_id"],
            reason=row["reason"],
            scope=RollbackScope(row["scope"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            outcome=RollbackOutcome(row["outcome"]),
            error=row.get("error"),
        )


class RolloutRun(BaseModel):
    """Header row for one rollout attempt; records hang off ``run_id``."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    service_id: str
    tier: RiskTier
    milestones: List[int]
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    final_state: Optional[RolloutState] = None
    archived_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "service_id": self.service_id,
            "tier": self.tier.value,
            "milestones": json.dumps(self.milestones),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "final_state": self.final_state.value if self.final_state else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RolloutRun":
        def parse_dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            run_id=row["run_id"],
            service_id=row["service_id"],
            tier=RiskTier(row["tier"]),
            milestones=json.loads(row["milestones"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=parse_dt(row.get("finished_at")),
            final_state=RolloutState(row["final_state"]) if row.get("final_state") else None,
            archived_at=parse_dt(row.get("archived_at")),
        )


class RolloutCommand(BaseModel):
    """Pending operator command for a service."""

    command_id: int
    service_id: str
    command: CommandType
    created_at: datetime


class ServiceStatus(BaseModel):
    """Operator view of a service's latest run."""

    service_id: str
    state: RolloutState = RolloutState.PENDING
    tier: Optional[RiskTier] = None
    run_id: Optional[str] = None
    milestone: Optional[int] = None
    last_reason: Optional[TransitionReason] = None
    updated_at: Optional[datetime] = None
    approval_gate: bool = False
    awaiting_approval: bool = False
    live: bool = False
