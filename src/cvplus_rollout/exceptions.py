"""Custom exceptions for the rollout controller.

This module defines domain-specific exceptions that carry an ``ErrorKind``
so callers (and the CLI) can map failures to a stable taxonomy instead of
matching on exception messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Error taxonomy shared by exceptions, rollback reasons and exit codes."""

    INVALID_STATE = "INVALID_STATE"
    ALREADY_IN_PROGRESS = "ALREADY_IN_PROGRESS"
    TRAFFIC_UPDATE_FAILED = "TRAFFIC_UPDATE_FAILED"
    METRICS_UNAVAILABLE = "METRICS_UNAVAILABLE"
    APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
    CANCELLED = "CANCELLED"
    EXTERNAL_DEPENDENCY_ERROR = "EXTERNAL_DEPENDENCY_ERROR"
    UNAVAILABLE = "UNAVAILABLE"


class RolloutError(Exception):
    """Base exception for all rollout controller errors.

    All custom exceptions in this module inherit from this base class,
    making it easy to catch all rollout-specific errors.
    """

    kind: ErrorKind = ErrorKind.EXTERNAL_DEPENDENCY_ERROR

    def __init__(self, message: str, kind: ErrorKind = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class ConfigurationError(RolloutError):
    """Raised when there's an error in configuration.

    Examples:
    - Unknown or missing configuration fields
    - Milestones that are not strictly increasing
    - Missing Firebase credentials
    - Unknown service id
    """

    kind = ErrorKind.INVALID_STATE


class InitializationError(RolloutError):
    """Raised when a component fails to initialize properly.

    Examples:
    - Firebase Admin SDK failed to initialize
    - Firestore client could not be created
    """

    pass


class InvalidStateError(RolloutError):
    """Raised when an operation is not valid in the current rollout state.

    Fatal to the call, not to the controller.

    Examples:
    - ``start()`` on a machine that already reached COMPLETED
    - ``approve()`` on a milestone without an approval gate
    - ``resume()`` for a run whose last record is terminal
    """

    kind = ErrorKind.INVALID_STATE


class AlreadyInProgressError(RolloutError):
    """Raised when a rollout is started for a service that is already active.

    Attributes:
        service_id: The service that already has an active rollout
    """

    kind = ErrorKind.ALREADY_IN_PROGRESS

    def __init__(self, service_id: str, message: str = None):
        self.service_id = service_id
        super().__init__(message or f"Rollout already in progress for '{service_id}'")


class ExternalDependencyError(RolloutError):
    """Raised when a collaborator (metrics, traffic, store) fails.

    Examples:
    - Firestore transport error
    - Feature flag document could not be written
    - Call exceeded its caller-supplied timeout
    """

    kind = ErrorKind.EXTERNAL_DEPENDENCY_ERROR


class MetricsUnavailableError(ExternalDependencyError):
    """Raised by a MetricsSource when metrics cannot be fetched."""

    kind = ErrorKind.UNAVAILABLE


class TrafficUpdateError(ExternalDependencyError):
    """Raised by a TrafficController when the percentage cannot be set."""

    kind = ErrorKind.TRAFFIC_UPDATE_FAILED


class StorageError(RolloutError):
    """Raised when record store operations fail.

    Examples:
    - Database file not found and not creatable
    - Failed to append a record
    """

    pass
