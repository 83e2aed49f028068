"""Resolution conflicts awaiting human adjudication, and unmapped Network events."""

import os
import logging
from typing import Optional

from shared.file_store import FileStore
from shared.models import ConflictStatus, ResolutionConflict, utcnow
from dispute_gateway.services.errors import ConflictNotFoundError

logger = logging.getLogger("disputerail.conflicts")


class ConflictRegistry:

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, "reconciliation", "conflicts.json")
        self.unmapped_path = os.path.join(data_dir, "reconciliation", "unmapped_events.jsonl")

    def raise_conflict(self, conflict: ResolutionConflict) -> ResolutionConflict:
        FileStore.update_json_field(self.path, conflict.id, conflict.model_dump(mode="json"))
        logger.warning(
            f"Resolution conflict {conflict.id} on dispute {conflict.dispute_id}: "
            f"internal={conflict.internal_resolution.outcome.value} "
            f"network={conflict.network_resolution}"
        )
        return conflict

    def get(self, conflict_id: str) -> ResolutionConflict:
        data = FileStore.read_json(self.path, default={}).get(conflict_id)
        if data is None:
            raise ConflictNotFoundError(conflict_id)
        return ResolutionConflict.model_validate(data)

    def list_conflicts(self, status: Optional[ConflictStatus] = None, dispute_id: Optional[str] = None) -> list[ResolutionConflict]:
        items = [ResolutionConflict.model_validate(v) for v in FileStore.read_json(self.path, default={}).values()]
        if status is not None:
            items = [c for c in items if c.status == status]
        if dispute_id is not None:
            items = [c for c in items if c.dispute_id == dispute_id]
        return sorted(items, key=lambda c: c.created_at)

    def acknowledge(self, conflict_id: str, reviewer: str, note: Optional[str] = None) -> ResolutionConflict:
        conflict = self.get(conflict_id)
        conflict.status = ConflictStatus.ACKNOWLEDGED
        conflict.acknowledged_by = reviewer
        conflict.acknowledged_at = utcnow()
        conflict.note = note
        FileStore.update_json_field(self.path, conflict.id, conflict.model_dump(mode="json"))
        logger.info(f"Conflict {conflict_id} acknowledged by {reviewer}")
        return conflict

    def record_unmapped(self, event: dict, reason: str, dispute_id: Optional[str] = None) -> None:
        FileStore.append_jsonl(self.unmapped_path, {
            "recorded_at": utcnow().isoformat(),
            "reason": reason,
            "dispute_id": dispute_id,
            "event": event,
        })

    def unmapped(self) -> list[dict]:
        return FileStore.read_jsonl(self.unmapped_path)
