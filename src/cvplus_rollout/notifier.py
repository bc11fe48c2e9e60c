"""Webhook notifications for rollout and rollback events.

Env:
- ROLLOUT_WEBHOOK_URL (optional; notifications are disabled without it)
- ROLLOUT_WEBHOOK_TOKEN (optional bearer token)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests

from cvplus_rollout import constants
from cvplus_rollout.models import RollbackEvent, utcnow

logger = logging.getLogger(__name__)


class RolloutEventNotifier:
    """Best-effort event delivery. Failures are logged and never raised."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = constants.NOTIFIER_TIMEOUT_SECONDS,
    ):
        self.webhook_url = webhook_url or os.getenv("ROLLOUT_WEBHOOK_URL")
        self.token = token or os.getenv("ROLLOUT_WEBHOOK_TOKEN")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def send_event(self, event: str, data: Dict[str, Any]) -> bool:
        """POST ``{event, timestamp, data}``; returns True on a 2xx response."""
        if not self.enabled:
            return False

        payload = {"event": event, "timestamp": utcnow().isoformat(), "data": data}
        try:
            resp = requests.post(
                self.webhook_url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.debug("RolloutEventNotifier send_event error: %s", exc)
            return False

        if resp.status_code >= 300:
            logger.debug(
                "RolloutEventNotifier send_event failed: %s %s", resp.status_code, resp.text
            )
            return False
        return True

    def rollout_finished(
        self, service_id: str, run_id: str, state: str, reason: str, milestone: Optional[int]
    ) -> bool:
        return self.send_event(
            "rollout.finished",
            {
                "serviceId": service_id,
                "runId": run_id,
                "state": state,
                "reason": reason,
                "milestone": milestone,
            },
        )

    def approval_required(self, service_id: str, run_id: str, milestone: int) -> bool:
        return self.send_event(
            "rollout.approval_required",
            {"serviceId": service_id, "runId": run_id, "milestone": milestone},
        )

    def rollback_executed(self, event: RollbackEvent) -> bool:
        return self.send_event(
            "rollback.executed",
            {
                "serviceId": event.service_id,
                "reason": event.reason,
                "scope": event.scope.value,
                "outcome": event.outcome.value,
                "error": event.error,
            },
        )
