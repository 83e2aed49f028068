"""Notifier interface and the outbox-backed implementation."""

import os
import logging
from typing import Protocol

from shared.file_store import FileStore
from shared.models import OutboxEvent
from shared.correlation import get_correlation_id

logger = logging.getLogger("disputerail.notifier")


class Notifier(Protocol):

    def notify(self, dispute_id: str, event_kind: str) -> None: ...


class OutboxNotifier:
    """Queues notifications in the outbox; dispute_jobs delivers them."""

    def __init__(self, data_dir: str):
        self.outbox_path = os.path.join(data_dir, "outbox", "events.jsonl")

    def notify(self, dispute_id: str, event_kind: str) -> None:
        event = OutboxEvent(
            type=event_kind if event_kind.startswith("dispute.") else f"dispute.{event_kind}",
            payload={"dispute_id": dispute_id, "event_kind": event_kind},
            correlation_id=get_correlation_id(),
        )
        FileStore.append_jsonl(self.outbox_path, event.model_dump(mode="json"))
        logger.debug(f"Queued notification {event.event_id} for {dispute_id}: {event_kind}")


class NullNotifier:

    def notify(self, dispute_id: str, event_kind: str) -> None:
        return None
