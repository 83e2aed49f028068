"""Domain errors raised by the dispute engine and mapped to HTTP by the routers."""

from typing import Optional


class DisputeNotFoundError(Exception):
    def __init__(self, dispute_id: str):
        self.dispute_id = dispute_id
        super().__init__(f"Dispute {dispute_id} not found")


class TransitionError(Exception):
    pass


class InvalidForStateError(TransitionError):
    def __init__(self, dispute_id: str, status: str, trigger: str):
        self.dispute_id = dispute_id
        self.status = status
        self.trigger = trigger
        super().__init__(
            f"Trigger {trigger} is not permitted for dispute {dispute_id} in status {status}"
        )


class InvalidTransitionPayloadError(TransitionError):
    def __init__(self, trigger: str, detail: str):
        self.trigger = trigger
        self.detail = detail
        super().__init__(f"Invalid payload for {trigger}: {detail}")


class VersionConflictError(Exception):
    def __init__(self, dispute_id: str, expected: Optional[int]):
        self.dispute_id = dispute_id
        self.expected = expected
        super().__init__(
            f"Dispute {dispute_id} changed since version {expected}; reload and retry"
        )


class DuplicateDisputeError(Exception):
    def __init__(self, transaction_id: str, dispute_id: str):
        self.transaction_id = transaction_id
        self.dispute_id = dispute_id
        super().__init__(
            f"Transaction {transaction_id} already has an open dispute ({dispute_id})"
        )


class ConflictNotFoundError(Exception):
    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Resolution conflict {conflict_id} not found")


class DisputeValidationError(Exception):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class UnmappedNetworkEventError(Exception):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)
