"""Timeline ledger - the append-only, ordered history of each dispute."""

import logging
from datetime import datetime
from typing import Optional

from shared.correlation import get_correlation_id
from shared.models import Actor, TimelineEvent, utcnow
from dispute_gateway.services.storage import DisputeStore

logger = logging.getLogger("disputerail.timeline")


class TimelineLedger:
    """Appends immutable events; ordering is (timestamp, insertion sequence)."""

    def __init__(self, store: DisputeStore):
        self.store = store

    def record(
        self,
        dispute_id: str,
        event: str,
        actor: Actor,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> TimelineEvent:
        entry = TimelineEvent(
            dispute_id=dispute_id,
            event=event,
            actor=actor,
            details=details or {},
            timestamp=timestamp or utcnow(),
            correlation_id=get_correlation_id(),
        )
        self.store.append_timeline_event(dispute_id, entry)
        logger.debug(f"Timeline {dispute_id} #{entry.sequence}: {event} by {actor.value}")
        return entry

    def history(self, dispute_id: str) -> list[TimelineEvent]:
        return self.store.timeline(dispute_id)

    def latest(self, dispute_id: str) -> Optional[TimelineEvent]:
        events = self.history(dispute_id)
        return events[-1] if events else None

    def events_named(self, dispute_id: str, event: str) -> list[TimelineEvent]:
        return [e for e in self.history(dispute_id) if e.event == event]
