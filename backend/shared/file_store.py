"""Atomic, lock-guarded JSON and JSONL documents on local disk."""

import json
import os
import tempfile
from filelock import FileLock
from typing import Any, Callable, Optional

LOCK_TIMEOUT = float(os.environ.get("FILE_LOCK_TIMEOUT", 10))


class FileStore:

    @staticmethod
    def lock(file_path: str) -> FileLock:
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        return FileLock(f"{file_path}.lock", timeout=LOCK_TIMEOUT)

    @staticmethod
    def _load(file_path: str, default: Any) -> Any:
        if not os.path.exists(file_path):
            return default
        with open(file_path, "r") as f:
            return json.load(f)

    @staticmethod
    def _dump_atomic(file_path: str, data: Any) -> None:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=os.path.dirname(file_path), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, file_path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def read_json(file_path: str, default: Any = None) -> Any:
        with FileStore.lock(file_path):
            return FileStore._load(file_path, default if default is not None else {})

    @staticmethod
    def write_json(file_path: str, data: Any) -> None:
        with FileStore.lock(file_path):
            FileStore._dump_atomic(file_path, data)

    @staticmethod
    def update_json(file_path: str, mutate: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write under one lock; ``mutate`` returns the new document."""
        with FileStore.lock(file_path):
            current = FileStore._load(file_path, default if default is not None else {})
            updated = mutate(current)
            FileStore._dump_atomic(file_path, updated)
            return updated

    @staticmethod
    def update_json_field(file_path: str, key: str, value: Any) -> None:
        def _set(data: dict) -> dict:
            data[key] = value
            return data
        FileStore.update_json(file_path, _set)

    @staticmethod
    def remove_json_field(file_path: str, key: str) -> None:
        def _drop(data: dict) -> dict:
            data.pop(key, None)
            return data
        FileStore.update_json(file_path, _drop)

    @staticmethod
    def compare_and_swap_json(
        file_path: str, data: dict, version_field: str, expected: Optional[int]
    ) -> bool:
        """Write ``data`` only if the stored document's version equals ``expected``.

        ``expected=None`` means the document must not exist yet.
        """
        with FileStore.lock(file_path):
            current = FileStore._load(file_path, None)
            if expected is None:
                if current is not None:
                    return False
            elif current is None or current.get(version_field) != expected:
                return False
            FileStore._dump_atomic(file_path, data)
            return True

    @staticmethod
    def append_jsonl(file_path: str, record: dict) -> None:
        with FileStore.lock(file_path):
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            with open(file_path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")

    @staticmethod
    def append_jsonl_sequenced(file_path: str, record: dict, field: str = "sequence") -> int:
        """Append ``record`` stamped with the next per-file sequence number."""
        with FileStore.lock(file_path):
            last = 0
            if os.path.exists(file_path):
                with open(file_path, "r") as f:
                    for line in f:
                        line = line.strip()
                        if line:
                            last = max(last, int(json.loads(line).get(field, 0)))
            record[field] = last + 1
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            with open(file_path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")
            return record[field]

    @staticmethod
    def read_jsonl(file_path: str) -> list[dict]:
        with FileStore.lock(file_path):
            if not os.path.exists(file_path):
                return []
            records = []
            with open(file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(json.loads(line))
            return records
