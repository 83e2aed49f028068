"""Merchant response timeout - moves silent disputes on once the window lapses."""

import logging
import asyncio
from datetime import datetime
from typing import Optional

from shared.correlation import correlation_scope
from shared.models import Trigger
from dispute_gateway.services.errors import InvalidForStateError, VersionConflictError
from dispute_gateway.services.state_machine import DisputeStateMachine

logger = logging.getLogger("dispute-jobs.timeouts")


class TimeoutScheduler:

    def __init__(self, state_machine: DisputeStateMachine):
        self.state_machine = state_machine

    def run_once(self, now: Optional[datetime] = None) -> list[str]:
        """Fire MERCHANT_TIMEOUT_48H for every due dispute; returns the ids moved."""
        moved = []
        for dispute_id in self.state_machine.due_transitions(now):
            with correlation_scope(prefix="timeout"):
                try:
                    self.state_machine.apply_transition(dispute_id, Trigger.MERCHANT_TIMEOUT_48H)
                except (InvalidForStateError, VersionConflictError) as e:
                    # The merchant answered between the query and the transition.
                    logger.info(f"Skipped timeout for {dispute_id}: {e}")
                    continue
            moved.append(dispute_id)
        if moved:
            logger.info(f"Merchant response window lapsed for {len(moved)} dispute(s)")
        return moved

    async def run_loop(self, interval: int = 60):
        logger.info(f"Timeout scheduler started (interval={interval}s)")
        while True:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Timeout scheduler error: {e}")
            await asyncio.sleep(interval)
