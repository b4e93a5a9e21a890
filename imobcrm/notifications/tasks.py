from __future__ import annotations

import logging
from typing import Any

from imobcrm.core.celery_app import celery_app
from imobcrm.metrics import observe_lead_notification
from imobcrm.notifications.gateway import InstanceRef, get_gateway


logger = logging.getLogger("imobcrm.notifications")


@celery_app.task(name="imobcrm.notifications.send_lead_welcome", ignore_result=True)
def send_lead_welcome(payload: dict[str, Any]) -> dict[str, Any]:
    """Single delivery attempt; failures are recorded, never retried."""

    gateway = get_gateway()
    if gateway is None:
        observe_lead_notification("skipped")
        logger.info("lead_notification_skipped", extra={"lead_id": payload.get("lead_id"), "outcome": "skipped"})
        return {"success": False, "error": "gateway not configured"}

    result = gateway.send(
        payload["number"],
        payload["text"],
        InstanceRef(name=payload["instance"], token=payload.get("token") or ""),
    )
    outcome = "sent" if result.success else "failed"
    observe_lead_notification(outcome)
    logger.info(
        "lead_notification_delivered" if result.success else "lead_notification_failed",
        extra={"lead_id": payload.get("lead_id"), "outcome": outcome, "status_code": result.status_code, "error": result.error},
    )
    return {"success": result.success, "status_code": result.status_code, "error": result.error}
