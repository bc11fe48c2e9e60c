"""Logging configuration with JSON output to stdout and file."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Global configuration cache
_logging_config: Optional[Dict] = None

# Error message for missing ENVIRONMENT variable
ENVIRONMENT_REQUIRED_ERROR = (
    "ENVIRONMENT variable is required but not set. "
    "Must be set to 'staging', 'production', or 'development'. "
    "This prevents accidental production rollouts."
)


def _load_logging_config() -> Dict:
    """
    Load logging configuration from config/logging.yaml.

    Returns:
        Dict with logging configuration, or default config if file not found.
    """
    global _logging_config

    if _logging_config is not None:
        return _logging_config

    config_path = Path(__file__).parent.parent.parent / "config" / "logging.yaml"

    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                _logging_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            print(
                f"Failed to load logging config from {config_path}: {e}",
                file=sys.stderr,
            )
            _logging_config = {}
    else:
        _logging_config = {}

    _logging_config.setdefault("console", {})
    _logging_config["console"].setdefault("max_reason_length", 200)

    return _logging_config


def format_reason(reason: Optional[str], max_length: Optional[int] = None) -> str:
    """
    Truncate a free-form reason for console display.

    Args:
        reason: Reason text (operator input or error message).
        max_length: Maximum length. If None, uses config value.

    Returns:
        Display version of the reason.
    """
    if not reason:
        return ""

    text = reason.strip()
    if max_length is None:
        max_length = _load_logging_config()["console"]["max_reason_length"]

    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Every line carries severity, timestamp, environment and service so the
    rollout log can be shipped to the same sink as the Cloud Functions logs.
    """

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        severity_map = {
            logging.DEBUG: "DEBUG",
            logging.INFO: "INFO",
            logging.WARNING: "WARNING",
            logging.ERROR: "ERROR",
            logging.CRITICAL: "ERROR",
        }
        severity = severity_map.get(record.levelno, "INFO")

        log_entry: Dict[str, Any] = {
            "severity": severity,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "environment": self.environment,
            "service": "rollout-controller",
            "logger": record.name,
        }

        if hasattr(record, "structured_fields"):
            log_entry.update(record.structured_fields)
        else:
            log_entry.update(
                {
                    "category": "system",
                    "action": "log",
                    "message": record.getMessage(),
                }
            )

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            log_entry["error"] = {
                "type": exc_type.__name__ if exc_type else "Exception",
                "message": str(exc_value),
                "stack": self.formatException(record.exc_info) if exc_tb else None,
            }

        return json.dumps(log_entry, default=str)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging with JSON output to stdout and, optionally, a file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. If None, uses LOG_FILE or logs/rollout.log.

    Environment Variables:
        LOG_LEVEL: Override log level.
        LOG_FILE: Override log file path. Set to an empty string to disable
            the file handler.
        ENVIRONMENT: Environment name (staging, production, development).
    """
    log_level = os.getenv("LOG_LEVEL", log_level).upper()

    if log_file is None and "LOG_FILE" not in os.environ:
        if os.getenv("ENVIRONMENT") == "production":
            log_file = "/srv/cvplus/logs/rollout.log"
        else:
            log_file = str(Path(__file__).parent.parent.parent / "logs" / "rollout.log")
    else:
        log_file = os.getenv("LOG_FILE", log_file)

    environment = os.getenv("ENVIRONMENT")
    if not environment:
        environment = "development"
        print("WARNING: ENVIRONMENT not set, defaulting to 'development'", file=sys.stderr)
        os.environ["ENVIRONMENT"] = environment

    json_formatter = JSONFormatter(environment=environment)
    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    console_handler.setLevel(getattr(logging, log_level))
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(json_formatter)
        file_handler.setLevel(getattr(logging, log_level))
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, log_level),
        handlers=handlers,
        force=True,
    )

    structured = StructuredLogger(logging.getLogger(__name__))
    structured.controller_status(
        "logging_configured",
        details={
            "environment": environment,
            "level": log_level,
            "file": log_file or None,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)


class StructuredLogger:
    """
    Helper class for structured logging with JSON output.

    Each helper emits one category of event so log queries can filter on
    ``category`` and ``action`` without parsing messages.
    """

    def __init__(self, logger: logging.Logger):
        """
        Initialize structured logger.

        Args:
            logger: Base logger instance

        Raises:
            ValueError: If ENVIRONMENT variable is not set
        """
        self.logger = logger
        self.environment = os.getenv("ENVIRONMENT")
        if not self.environment:
            raise ValueError(ENVIRONMENT_REQUIRED_ERROR)

    def _log(self, level: str, structured_fields: Dict[str, Any]) -> None:
        log_method = getattr(self.logger, level.lower())
        message = structured_fields.get("message", "")
        log_method(message, extra={"structured_fields": structured_fields})

    def rollout_transition(
        self,
        service_id: str,
        run_id: str,
        from_state: str,
        to_state: str,
        reason: str,
        details: Optional[Dict] = None,
    ) -> None:
        """
        Log a state machine transition.

        Args:
            service_id: Service being rolled out
            run_id: Rollout run identifier
            from_state: Previous state (e.g. HOLDING)
            to_state: New state (e.g. ROLLED_BACK)
            reason: Transition reason
            details: Optional additional details (milestone, snapshot)
        """
        structured_fields = {
            "category": "rollout",
            "action": to_state.lower(),
            "message": f"Rollout {service_id}: {from_state} -> {to_state} ({reason})",
            "serviceId": service_id,
            "runId": run_id,
            "details": {"from": from_state, "to": to_state, "reason": reason, **(details or {})},
        }

        level = "info"
        if to_state.upper() == "ROLLED_BACK":
            level = "error"
        self._log(level, structured_fields)

    def health_check(
        self, service_id: str, status: str, details: Optional[Dict] = None
    ) -> None:
        """
        Log a health poll result.

        Args:
            service_id: Service being monitored
            status: healthy, unhealthy, low_sample or missed
            details: Optional snapshot and violation details
        """
        structured_fields = {
            "category": "health",
            "action": status.lower(),
            "message": f"Health check {status} for {service_id}",
            "serviceId": service_id,
            "details": details or {},
        }

        level = "info"
        if status.lower() == "unhealthy":
            level = "error"
        elif status.lower() in ("low_sample", "missed"):
            level = "warning"
        self._log(level, structured_fields)

    def rollback_activity(
        self, service_id: str, action: str, reason: str, details: Optional[Dict] = None
    ) -> None:
        """
        Log rollback execution.

        Args:
            service_id: Service being rolled back
            action: started, succeeded, failed or skipped
            reason: Rollback reason
            details: Optional additional details
        """
        structured_fields = {
            "category": "rollback",
            "action": action.lower(),
            "message": f"Rollback {action} for {service_id}: {format_reason(reason)}",
            "serviceId": service_id,
            "details": {"reason": reason, **(details or {})},
        }

        level = "warning"
        if action.lower() == "failed":
            level = "error"
        self._log(level, structured_fields)

    def database_activity(
        self,
        operation: str,
        table: str,
        status: str,
        details: Optional[Dict] = None,
    ) -> None:
        """
        Log record store operations.

        Args:
            operation: Database operation (append, archive, query)
            table: Table name
            status: Operation status
            details: Optional additional details
        """
        structured_fields = {
            "category": "database",
            "action": operation.lower(),
            "message": f"Database {operation} on {table}: {status}",
            "details": {"table": table, "status": status, **(details or {})},
        }
        self._log("info", structured_fields)

    def controller_status(self, status: str, details: Optional[Dict] = None) -> None:
        """
        Log controller status changes.

        Args:
            status: Controller status (started, stopping, idle, command_received)
            details: Optional additional details
        """
        structured_fields = {
            "category": "controller",
            "action": status.lower(),
            "message": f"Controller {status}",
            "details": details or {},
        }
        self._log("info", structured_fields)


def get_structured_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        StructuredLogger instance.
    """
    return StructuredLogger(logging.getLogger(name))
