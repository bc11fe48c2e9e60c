"""Application-wide constants."""

# Health Thresholds
DEFAULT_MAX_ERROR_RATE = 0.05  # 5% of requests may fail
DEFAULT_LATENCY_MULTIPLIER = 2.0  # Latency may reach 2x the recorded baseline
DEFAULT_MIN_SUCCESS_RATE = 0.95  # 95% of user actions must succeed
DEFAULT_MIN_SAMPLE_SIZE = 20  # Requests needed before a snapshot can fail a hold

# Metrics Collection
DEFAULT_METRICS_WINDOW_SECONDS = 300  # Look-back window per poll (5 minutes)
DEFAULT_METRICS_TIMEOUT_SECONDS = 15  # Timeout for a single MetricsSource call
DEFAULT_MAX_CONSECUTIVE_MISSES = 3  # Missed polls before METRICS_UNAVAILABLE
DEFAULT_BASELINE_LATENCY_MS = 250.0  # Used when no baseline document exists

# Traffic Control
DEFAULT_TRAFFIC_TIMEOUT_SECONDS = 15  # Timeout for a single TrafficController call
DEFAULT_FLAGS_COLLECTION = "feature_flags"
DEFAULT_FLAGS_DOCUMENT = "migration_flags"
FLAG_NAME_SUFFIX = "-package-enabled"  # Feature flag name = <service><suffix>
FLAG_UPDATED_BY = "cvplus-rollout-controller"

# Approval Gates
DEFAULT_APPROVAL_THRESHOLD = 50  # Milestones at or above this may require approval
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600  # Bounded wait for an operator approval

# Tier Schedules
LOW_RISK_MILESTONES = [10, 25, 50, 75, 100]
MEDIUM_RISK_MILESTONES = [10, 25, 50, 75, 100]
CRITICAL_RISK_MILESTONES = [5, 10, 25, 50, 75, 100]
DEFAULT_POLL_INTERVAL_SECONDS = 30
LOW_RISK_MONITORING_SECONDS = 300
MEDIUM_RISK_MONITORING_SECONDS = 900
CRITICAL_RISK_MONITORING_SECONDS = 1800

# Controller
MAX_CONCURRENT_ROLLOUTS = 8  # Worker threads for concurrent service rollouts
NOTIFIER_TIMEOUT_SECONDS = 5  # Webhook POST timeout

# CLI Exit Codes
EXIT_OK = 0
EXIT_INVALID = 1
EXIT_DEPENDENCY_FAILURE = 2
