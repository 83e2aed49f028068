"""Processed-event keys, dead letters, and request idempotency keys."""

import os
import json
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Optional

from shared.file_store import FileStore
from shared.models import NetworkEvent, utcnow

logger = logging.getLogger("disputerail.idempotency")


class ProcessedEventLog:
    """Remembers every (case, kind, external timestamp) key that was fully applied."""

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, "reconciliation", "processed_events.json")

    def seen(self, key: str) -> bool:
        return key in FileStore.read_json(self.path, default={})

    def mark(self, key: str, outcome: str, dispute_id: Optional[str] = None) -> None:
        FileStore.update_json_field(self.path, key, {
            "processed_at": utcnow().isoformat(),
            "outcome": outcome,
            "dispute_id": dispute_id,
        })

    def all(self) -> dict[str, dict]:
        return FileStore.read_json(self.path, default={})


class DeadLetterStore:
    """Events that matched no dispute, kept until replayed or matched by hand."""

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, "reconciliation", "dead_letters.json")

    def put(self, event: NetworkEvent, reason: str) -> None:
        key = event.idempotency_key()

        def _add(letters: dict) -> dict:
            entry = letters.get(key)
            if entry is None:
                letters[key] = {
                    "event": event.model_dump(mode="json"),
                    "reason": reason,
                    "attempts": 1,
                    "first_seen_at": utcnow().isoformat(),
                    "last_seen_at": utcnow().isoformat(),
                }
            else:
                entry["attempts"] = entry.get("attempts", 1) + 1
                entry["last_seen_at"] = utcnow().isoformat()
            return letters

        FileStore.update_json(self.path, _add)
        logger.warning(f"Dead-lettered Network event {key}: {reason}")

    def remove(self, key: str) -> None:
        FileStore.remove_json_field(self.path, key)

    def all(self) -> dict[str, dict]:
        return FileStore.read_json(self.path, default={})

    def events(self) -> list[NetworkEvent]:
        return [NetworkEvent.model_validate(v["event"]) for v in self.all().values()]


class IdempotencyConflictError(Exception):
    pass


class CachedResponse:
    def __init__(self, response: dict, status_code: int):
        self.response = response
        self.status_code = status_code


class RequestKeyCache:
    """Replays the stored response for a repeated ``Idempotency-Key`` header."""

    TTL_HOURS = 24

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, "idempotency", "request_keys.json")

    @staticmethod
    def compute_hash(body: dict) -> str:
        serialized = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode()).hexdigest()

    def check(self, key: str, request_hash: str) -> Optional[CachedResponse]:
        stored = FileStore.read_json(self.path, default={}).get(key)
        if stored is None:
            return None
        if stored["request_hash"] != request_hash:
            raise IdempotencyConflictError(
                f"Idempotency key '{key}' already used with different request body"
            )
        created = datetime.fromisoformat(stored["created_at"])
        if utcnow() - created > timedelta(hours=self.TTL_HOURS):
            return None
        return CachedResponse(response=stored["response"], status_code=stored["status_code"])

    def store(self, key: str, request_hash: str, response: dict, status_code: int) -> None:
        FileStore.update_json_field(self.path, key, {
            "request_hash": request_hash,
            "response": response,
            "status_code": status_code,
            "created_at": utcnow().isoformat(),
        })
