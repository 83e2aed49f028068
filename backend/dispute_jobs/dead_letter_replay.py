"""Dead-letter replay - retries Network events that matched no dispute yet."""

import logging
import asyncio
from collections import Counter

from shared.correlation import correlation_scope
from dispute_gateway.services.reconciliation import (
    NetworkReconciliationEngine, ReconcileOutcome, ReconcileResult,
)

logger = logging.getLogger("dispute-jobs.dead-letters")


class DeadLetterReplayJob:

    def __init__(self, reconciler: NetworkReconciliationEngine):
        self.reconciler = reconciler

    def run_once(self) -> list[ReconcileResult]:
        with correlation_scope(prefix="replay"):
            results = self.reconciler.replay_dead_letters()
        if results:
            counts = Counter(r.outcome.value for r in results)
            still_dead = counts.get(ReconcileOutcome.DEAD_LETTERED.value, 0)
            logger.info(
                f"Replayed {len(results)} dead letter(s), {len(results) - still_dead} matched: {dict(counts)}"
            )
        return results

    async def run_loop(self, interval: int = 120):
        logger.info(f"Dead-letter replay started (interval={interval}s)")
        while True:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Dead-letter replay error: {e}")
            await asyncio.sleep(interval)
