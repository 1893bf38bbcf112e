"""
Notification port that records lifecycle events in the build repository.

Downstream fan-out (webhooks, queues, emails) reads the event log; the
state machine itself only ever appends to it.
"""

import logging
from typing import Any

from ci_common.models import LifecycleEvent
from ci_common.ports import NotificationPort
from ci_common.repository import BuildRepository

logger = logging.getLogger(__name__)


class EventLogNotifier(NotificationPort):
    """
    Persists every emitted event as a LifecycleEvent row.
    """

    def __init__(self, repository: BuildRepository):
        self.repository = repository

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        source_type = event_name.split(":", 1)[0]
        source_id = payload.get(f"{source_type}_id") or payload.get("id")
        if source_id is None:
            raise ValueError(f"Event {event_name} has no {source_type}_id")

        event = LifecycleEvent(
            repository_id=payload["repository_id"],
            source_type=source_type,
            source_id=source_id,
            event=event_name,
            data=payload,
        )
        await self.repository.add_event(event)
        logger.debug(f"Recorded {event_name} for {source_type} {source_id}")
