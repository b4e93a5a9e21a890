from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from imobcrm.context import get_correlation_id
from imobcrm.core.events import EventName, event_bus

MAX_RECORDED_EVENTS = 1000

# Most recent envelopes only.
published_events: deque[dict[str, Any]] = deque(maxlen=MAX_RECORDED_EVENTS)


def build_envelope(
    event_type: EventName,
    *,
    actor_user_id: str | None,
    tenant_id: str | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type.value,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "tenant_id": tenant_id,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_bus.publish(EventName(envelope["event_type"]), envelope)
