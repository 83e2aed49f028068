"""Service wiring shared by the routers and the background jobs."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from fastapi import HTTPException, Request

from shared.config import DATA_DIR, NETWORK_API_URL, load_fraud_config
from shared.models import utcnow
from dispute_gateway.services.circuit_breaker import NetworkUnavailableError
from dispute_gateway.services.conflicts import ConflictRegistry
from dispute_gateway.services.errors import (
    ConflictNotFoundError, DisputeNotFoundError, DisputeValidationError,
    DuplicateDisputeError, InvalidForStateError, InvalidTransitionPayloadError,
    VersionConflictError,
)
from dispute_gateway.services.idempotency import (
    DeadLetterStore, ProcessedEventLog, RequestKeyCache,
)
from dispute_gateway.services.network_client import NetworkClient, NetworkError
from dispute_gateway.services.notifier import Notifier, OutboxNotifier
from dispute_gateway.services.reconciliation import NetworkReconciliationEngine
from dispute_gateway.services.state_machine import DisputeStateMachine
from dispute_gateway.services.storage import FileDisputeStore

logger = logging.getLogger("disputerail.dependencies")


@dataclass
class DisputeServices:
    data_dir: str
    store: FileDisputeStore
    notifier: Notifier
    state_machine: DisputeStateMachine
    reconciler: NetworkReconciliationEngine
    processed: ProcessedEventLog
    dead_letters: DeadLetterStore
    conflicts: ConflictRegistry
    network: NetworkClient
    request_keys: RequestKeyCache


def build_services(
    data_dir: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    network: Optional[NetworkClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> DisputeServices:
    data_dir = data_dir or DATA_DIR
    store = FileDisputeStore(data_dir)
    notifier = notifier or OutboxNotifier(data_dir)
    state_machine = DisputeStateMachine(
        store, notifier, data_dir,
        fraud_config=load_fraud_config(),
        clock=clock,
    )
    processed = ProcessedEventLog(data_dir)
    dead_letters = DeadLetterStore(data_dir)
    conflicts = ConflictRegistry(data_dir)
    reconciler = NetworkReconciliationEngine(state_machine, store, processed, dead_letters, conflicts)
    return DisputeServices(
        data_dir=data_dir,
        store=store,
        notifier=notifier,
        state_machine=state_machine,
        reconciler=reconciler,
        processed=processed,
        dead_letters=dead_letters,
        conflicts=conflicts,
        network=network or NetworkClient(NETWORK_API_URL, data_dir),
        request_keys=RequestKeyCache(data_dir),
    )


def get_services(request: Request) -> DisputeServices:
    return request.app.state.services


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate domain errors raised inside the block into HTTP responses."""
    try:
        yield
    except (DisputeNotFoundError, ConflictNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidForStateError, VersionConflictError, DuplicateDisputeError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (InvalidTransitionPayloadError, DisputeValidationError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NetworkUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NetworkError as e:
        logger.error(f"Network call failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
