"""Dispute persistence: the store protocol and its file-backed implementation."""

import glob
import os
import logging
from typing import Optional, Protocol

from shared.file_store import FileStore
from shared.models import Dispute, TimelineEvent
from dispute_gateway.services.errors import DisputeNotFoundError, VersionConflictError

logger = logging.getLogger("disputerail.storage")


class DisputeStore(Protocol):

    def create(self, dispute: Dispute) -> Dispute: ...

    def load(self, dispute_id: str) -> Dispute: ...

    def save(self, dispute: Dispute, expected_version: int) -> Dispute: ...

    def append_timeline_event(self, dispute_id: str, event: TimelineEvent) -> TimelineEvent: ...

    def timeline(self, dispute_id: str) -> list[TimelineEvent]: ...

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Dispute]: ...

    def find_by_network_case_id(self, network_case_id: str) -> Optional[Dispute]: ...

    def list_ids(self) -> list[str]: ...


class FileDisputeStore:
    """One JSON document per dispute, one JSONL timeline per dispute, JSON indexes."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.disputes_dir = os.path.join(data_dir, "disputes")
        self.timeline_dir = os.path.join(data_dir, "timeline")
        self.transactions_index = os.path.join(data_dir, "indexes", "transactions.json")
        self.network_cases_index = os.path.join(data_dir, "indexes", "network_cases.json")

    def _dispute_path(self, dispute_id: str) -> str:
        return os.path.join(self.disputes_dir, f"{dispute_id}.json")

    def _timeline_path(self, dispute_id: str) -> str:
        return os.path.join(self.timeline_dir, f"{dispute_id}.jsonl")

    def create(self, dispute: Dispute) -> Dispute:
        dispute.version = 1
        written = FileStore.compare_and_swap_json(
            self._dispute_path(dispute.id),
            dispute.model_dump(mode="json"),
            version_field="version",
            expected=None,
        )
        if not written:
            raise VersionConflictError(dispute.id, None)
        FileStore.update_json_field(self.transactions_index, dispute.transaction.id, dispute.id)
        return dispute

    def load(self, dispute_id: str) -> Dispute:
        path = self._dispute_path(dispute_id)
        data = FileStore.read_json(path, default={})
        if not data:
            raise DisputeNotFoundError(dispute_id)
        return Dispute.model_validate(data)

    def save(self, dispute: Dispute, expected_version: int) -> Dispute:
        candidate = dispute.model_copy(update={"version": expected_version + 1})
        written = FileStore.compare_and_swap_json(
            self._dispute_path(dispute.id),
            candidate.model_dump(mode="json"),
            version_field="version",
            expected=expected_version,
        )
        if not written:
            logger.warning(f"Version conflict saving dispute {dispute.id} at version {expected_version}")
            raise VersionConflictError(dispute.id, expected_version)
        if candidate.network_case_id:
            indexed = FileStore.read_json(self.network_cases_index, default={})
            if indexed.get(candidate.network_case_id) != candidate.id:
                FileStore.update_json_field(
                    self.network_cases_index, candidate.network_case_id, candidate.id
                )
        dispute.version = candidate.version
        return dispute

    def append_timeline_event(self, dispute_id: str, event: TimelineEvent) -> TimelineEvent:
        record = event.model_dump(mode="json")
        event.sequence = FileStore.append_jsonl_sequenced(self._timeline_path(dispute_id), record)
        return event

    def timeline(self, dispute_id: str) -> list[TimelineEvent]:
        events = [
            TimelineEvent.model_validate(r)
            for r in FileStore.read_jsonl(self._timeline_path(dispute_id))
        ]
        return sorted(events, key=lambda e: (e.timestamp, e.sequence))

    def _find_via_index(self, index_path: str, key: str) -> Optional[Dispute]:
        dispute_id = FileStore.read_json(index_path, default={}).get(key)
        if not dispute_id:
            return None
        try:
            return self.load(dispute_id)
        except DisputeNotFoundError:
            logger.warning(f"Index {os.path.basename(index_path)} points at missing dispute {dispute_id}")
            return None

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Dispute]:
        return self._find_via_index(self.transactions_index, transaction_id)

    def find_by_network_case_id(self, network_case_id: str) -> Optional[Dispute]:
        return self._find_via_index(self.network_cases_index, network_case_id)

    def list_ids(self) -> list[str]:
        paths = glob.glob(os.path.join(self.disputes_dir, "*.json"))
        return sorted(os.path.splitext(os.path.basename(p))[0] for p in paths)
