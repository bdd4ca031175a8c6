"""
Broadcast Publisher - real-time alert events over Redis pub/sub.

The clinician-facing WebSocket gateway subscribes to the org channel and
fans messages out to connected sessions. Delivery is fire-and-forget and
at-most-once: nothing is persisted for offline subscribers, who re-fetch
current alert state on reconnect.

Channel naming:
    mindlog:alerts:{org_id}
"""

import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .evaluation_metrics import EvaluationMetrics

logger = logging.getLogger(__name__)

ALERT_CHANNEL_PREFIX = "mindlog:alerts"


class EventType(str, Enum):
    ALERT_CREATED = "alert.created"


@dataclass
class AlertEvent:
    """Wire payload for one newly created (or re-broadcast) alert"""
    alertId: str
    severity: str
    title: str
    ruleKey: str
    patientId: str


def org_channel(org_id: str) -> str:
    return f"{ALERT_CHANNEL_PREFIX}:{org_id}"


class AlertPublisher:
    """Publishes alert events; never raises"""

    def __init__(self, redis_client, metrics: Optional[EvaluationMetrics] = None):
        self.redis = redis_client
        self.metrics = metrics or EvaluationMetrics()

    async def _publish(self, org_id: str, message: Dict[str, Any]) -> bool:
        try:
            await self.redis.publish(org_channel(org_id), json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Publish to {org_channel(org_id)} failed: {type(e).__name__}: {e}")
            return False

    async def publish_alert(self, org_id: str, event: AlertEvent) -> bool:
        """
        Publish an alert.created event.

        Returns:
            True if Redis accepted the message (not that anyone received it)
        """
        delivered = await self._publish(org_id, {
            "type": EventType.ALERT_CREATED.value,
            "data": asdict(event),
        })
        self.metrics.record_broadcast(delivered)
        if delivered:
            logger.info(f"Broadcast alert {event.alertId} ({event.ruleKey}) to org {org_id}")
        return delivered
