"""Firestore-backed metrics source and feature-flag traffic controller.

Metrics are aggregated from the collections the Cloud Functions already
write (``request_logs``, ``error_logs``, ``performance_metrics``,
``user_actions``), filtered by ``serviceId`` and a time window. Traffic is
shifted by writing the service's entry in ``feature_flags/migration_flags``,
which the functions read to decide whether to route a request to the new
package.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from google.api_core.exceptions import GoogleAPICallError, RetryError
from google.cloud import firestore as gcloud_firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from cvplus_rollout import constants
from cvplus_rollout.adapters.base import MetricsSource, TrafficController
from cvplus_rollout.exceptions import MetricsUnavailableError, TrafficUpdateError
from cvplus_rollout.models import HealthSnapshot, utcnow
from cvplus_rollout.storage.firestore_client import FirestoreClient

logger = logging.getLogger(__name__)

REQUEST_LOGS = "request_logs"
ERROR_LOGS = "error_logs"
PERFORMANCE_METRICS = "performance_metrics"
USER_ACTIONS = "user_actions"
PERFORMANCE_BASELINES = "performance_baselines"

FIRESTORE_ERRORS = (GoogleAPICallError, RetryError)


def flag_name_for(service_id: str) -> str:
    """Default feature flag name, e.g. ``cv-analyzer-package-enabled``."""
    return f"{service_id}{constants.FLAG_NAME_SUFFIX}"


class _FirestoreAdapter:
    """Holds an injected client, or connects on first use."""

    def __init__(
        self,
        db: Optional[gcloud_firestore.Client] = None,
        database_name: str = "(default)",
        credentials_path: Optional[str] = None,
    ):
        self._db = db
        self.database_name = database_name
        self.credentials_path = credentials_path

    @property
    def db(self) -> gcloud_firestore.Client:
        if self._db is None:
            self._db = FirestoreClient.get_client(self.database_name, self.credentials_path)
        return self._db


class FirestoreMetricsSource(_FirestoreAdapter, MetricsSource):
    """Health snapshots computed from Firestore log collections."""

    def __init__(
        self,
        db: Optional[gcloud_firestore.Client] = None,
        database_name: str = "(default)",
        credentials_path: Optional[str] = None,
        default_latency_ms: float = constants.DEFAULT_BASELINE_LATENCY_MS,
    ):
        super().__init__(db, database_name, credentials_path)
        self.default_latency_ms = default_latency_ms

    def _window_query(self, collection: str, service_id: str, window_seconds: float):
        since = utcnow() - timedelta(seconds=window_seconds)
        return (
            self.db.collection(collection)
            .where(filter=FieldFilter("serviceId", "==", service_id))
            .where(filter=FieldFilter("timestamp", ">=", since))
        )

    def _stream(self, collection: str, service_id: str, window_seconds: float) -> list:
        return list(self._window_query(collection, service_id, window_seconds).stream())

    def fetch(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        """
        Aggregate one window of metrics.

        Error rate is error log count over request log count, latency the
        mean of ``performance_metrics.latency`` and success rate the share of
        ``user_actions`` with ``success == True``. Empty collections yield a
        zero error rate, the default latency and a success rate of 1.0 with
        ``request_volume=0``, which the evaluator treats as a low sample.

        Raises:
            MetricsUnavailableError: On Firestore transport errors
        """
        try:
            request_docs = self._stream(REQUEST_LOGS, service_id, window_seconds)
            errors = self._stream(ERROR_LOGS, service_id, window_seconds)
            perf = self._stream(PERFORMANCE_METRICS, service_id, window_seconds)
            actions = self._stream(USER_ACTIONS, service_id, window_seconds)
        except FIRESTORE_ERRORS as e:
            raise MetricsUnavailableError(f"Metrics query failed for {service_id}: {e}") from e

        request_count = len(request_docs)
        error_rate = min(1.0, len(errors) / request_count) if request_count else 0.0

        latencies = [
            float(doc.to_dict().get("latency"))
            for doc in perf
            if doc.to_dict().get("latency") is not None
        ]
        latency = sum(latencies) / len(latencies) if latencies else self.default_latency_ms

        successes = sum(1 for doc in actions if doc.to_dict().get("success") is True)
        success_rate = successes / len(actions) if actions else 1.0

        snapshot = HealthSnapshot(
            service_id=service_id,
            error_rate=error_rate,
            latency_ms=latency,
            success_rate=success_rate,
            request_volume=request_count,
        )
        logger.debug(
            "Fetched metrics for %s: error_rate=%.4f latency=%.1fms success=%.4f volume=%d",
            service_id,
            snapshot.error_rate,
            snapshot.latency_ms,
            snapshot.success_rate,
            snapshot.request_volume,
        )
        return snapshot

    def fetch_baseline(self, service_id: str, window_seconds: float) -> HealthSnapshot:
        """
        Latest ``performance_baselines`` document for the service.

        The baseline latency is ``metrics.responseTime.p50``. Without a
        baseline document a live window is measured instead.
        """
        try:
            docs = list(
                self.db.collection(PERFORMANCE_BASELINES)
                .where(filter=FieldFilter("serviceId", "==", service_id))
                .order_by("timestamp", direction=gcloud_firestore.Query.DESCENDING)
                .limit(1)
                .stream()
            )
        except FIRESTORE_ERRORS as e:
            raise MetricsUnavailableError(f"Baseline query failed for {service_id}: {e}") from e

        if not docs:
            logger.warning("No performance baseline for %s, measuring a live window", service_id)
            return self.fetch(service_id, window_seconds)

        metrics: Dict[str, Any] = docs[0].to_dict().get("metrics") or {}
        response_time = metrics.get("responseTime") or {}
        return HealthSnapshot(
            service_id=service_id,
            error_rate=min(1.0, float(metrics.get("errorRate", 0.0))),
            latency_ms=float(response_time.get("p50", self.default_latency_ms)),
            success_rate=1.0,
            request_volume=int(metrics.get("throughput", 0)),
        )


class FirestoreTrafficController(_FirestoreAdapter, TrafficController):
    """Shift traffic by writing the service's migration feature flag."""

    def __init__(
        self,
        db: Optional[gcloud_firestore.Client] = None,
        database_name: str = "(default)",
        credentials_path: Optional[str] = None,
        flags_collection: str = constants.DEFAULT_FLAGS_COLLECTION,
        flags_document: str = constants.DEFAULT_FLAGS_DOCUMENT,
        flag_names: Optional[Dict[str, str]] = None,
    ):
        super().__init__(db, database_name, credentials_path)
        self.flags_collection = flags_collection
        self.flags_document = flags_document
        self.flag_names = flag_names or {}

    def _flags_ref(self):
        return self.db.collection(self.flags_collection).document(self.flags_document)

    def flag_for(self, service_id: str) -> str:
        return self.flag_names.get(service_id) or flag_name_for(service_id)

    def set_percentage(self, service_id: str, percentage: int) -> bool:
        """
        Write ``{enabled, rolloutPercentage, updatedAt, updatedBy}`` with merge.

        Writing the same percentage twice leaves the flag unchanged apart from
        ``updatedAt``.

        Raises:
            ValueError: If percentage is outside 0..100
            TrafficUpdateError: On Firestore transport errors
        """
        if not 0 <= percentage <= 100:
            raise ValueError(f"percentage must be within 0..100, got {percentage}")

        flag = self.flag_for(service_id)
        update = {
            flag: {
                "enabled": percentage > 0,
                "rolloutPercentage": percentage,
                "updatedAt": gcloud_firestore.SERVER_TIMESTAMP,
                "updatedBy": constants.FLAG_UPDATED_BY,
            }
        }
        try:
            self._flags_ref().set(update, merge=True)
        except FIRESTORE_ERRORS as e:
            raise TrafficUpdateError(f"Failed to update flag {flag}: {e}") from e

        logger.info("Set %s to %d%% (flag %s)", service_id, percentage, flag)
        return True

    def get_percentage(self, service_id: str) -> Optional[int]:
        try:
            doc = self._flags_ref().get()
        except FIRESTORE_ERRORS as e:
            raise TrafficUpdateError(f"Failed to read migration flags: {e}") from e

        if not doc.exists:
            return None
        entry = (doc.to_dict() or {}).get(self.flag_for(service_id)) or {}
        value = entry.get("rolloutPercentage")
        return int(value) if value is not None else None
