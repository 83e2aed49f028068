"""File-backed circuit breaker guarding outbound calls to the Network."""

import os
from datetime import datetime, timedelta, timezone
from shared.file_store import FileStore
from shared.models import CircuitState


class NetworkUnavailableError(Exception):
    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"Network endpoint {endpoint} circuit is OPEN")


class CircuitBreaker:

    def __init__(self, data_dir: str, endpoint: str = "network"):
        self.endpoint = endpoint
        self.state_path = os.path.join(data_dir, "network", f"{endpoint}_circuit.json")
        self.failure_threshold = int(os.environ.get("CB_FAILURE_THRESHOLD", 5))
        self.recovery_timeout = int(os.environ.get("CB_RECOVERY_TIMEOUT", 30))
        self.half_open_max = int(os.environ.get("CB_HALF_OPEN_MAX_CALLS", 3))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _read_state(self) -> dict:
        return FileStore.read_json(self.state_path, default={
            "endpoint": self.endpoint,
            "circuit_state": CircuitState.CLOSED.value,
            "failure_count": 0,
            "success_count": 0,
            "half_open_calls": 0,
        })

    def _write_state(self, state: dict):
        FileStore.write_json(self.state_path, state)

    def can_execute(self) -> bool:
        state = self._read_state()
        circuit = state.get("circuit_state", CircuitState.CLOSED.value)

        if circuit == CircuitState.OPEN.value:
            opened_at = state.get("opened_at")
            if opened_at and self._now() - datetime.fromisoformat(opened_at) > timedelta(seconds=self.recovery_timeout):
                state["circuit_state"] = CircuitState.HALF_OPEN.value
                state["half_open_calls"] = 0
                self._write_state(state)
                return True
            return False

        if circuit == CircuitState.HALF_OPEN.value:
            return state.get("half_open_calls", 0) < self.half_open_max

        return True

    def record_success(self):
        state = self._read_state()
        state["success_count"] = state.get("success_count", 0) + 1
        state["last_success_at"] = self._now().isoformat()

        if state.get("circuit_state") == CircuitState.HALF_OPEN.value:
            state["half_open_calls"] = state.get("half_open_calls", 0) + 1
            if state["half_open_calls"] >= self.half_open_max:
                state["circuit_state"] = CircuitState.CLOSED.value
                state["failure_count"] = 0
                state["half_open_calls"] = 0

        self._write_state(state)

    def record_failure(self):
        state = self._read_state()
        circuit = state.get("circuit_state", CircuitState.CLOSED.value)
        state["failure_count"] = state.get("failure_count", 0) + 1
        state["last_failure_at"] = self._now().isoformat()

        if circuit == CircuitState.HALF_OPEN.value or (
            circuit == CircuitState.CLOSED.value and state["failure_count"] >= self.failure_threshold
        ):
            state["circuit_state"] = CircuitState.OPEN.value
            state["opened_at"] = self._now().isoformat()
            state["half_open_calls"] = 0

        self._write_state(state)

    def get_state(self) -> dict:
        return self._read_state()
