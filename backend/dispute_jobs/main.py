"""Dispute Jobs - background service running timeouts, outbox, Network sync and replay."""

import os
import asyncio
import logging

from shared.config import DATA_DIR, LOG_LEVEL, init_data_dirs
from dispute_gateway.dependencies import build_services
from dispute_jobs.dead_letter_replay import DeadLetterReplayJob
from dispute_jobs.network_sync import NetworkStatusSync
from dispute_jobs.outbox_dispatcher import OutboxDispatcher
from dispute_jobs.timeout_scheduler import TimeoutScheduler

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("dispute-jobs")

TIMEOUT_INTERVAL = int(os.environ.get("TIMEOUT_INTERVAL_SECONDS", 60))
OUTBOX_INTERVAL = int(os.environ.get("OUTBOX_INTERVAL_SECONDS", 5))
NETWORK_SYNC_INTERVAL = int(os.environ.get("NETWORK_SYNC_INTERVAL_SECONDS", 300))
REPLAY_INTERVAL = int(os.environ.get("DEAD_LETTER_REPLAY_INTERVAL_SECONDS", 120))


async def main():
    logger.info("Dispute Jobs service starting...")
    init_data_dirs(DATA_DIR)
    services = build_services(DATA_DIR)

    timeouts = TimeoutScheduler(services.state_machine)
    dispatcher = OutboxDispatcher(services.data_dir, services.store)
    sync = NetworkStatusSync(services.store, services.network, services.reconciler)
    replay = DeadLetterReplayJob(services.reconciler)

    # Run all background loops concurrently
    await asyncio.gather(
        timeouts.run_loop(interval=TIMEOUT_INTERVAL),
        dispatcher.run_loop(interval=OUTBOX_INTERVAL),
        sync.run_loop(interval=NETWORK_SYNC_INTERVAL),
        replay.run_loop(interval=REPLAY_INTERVAL),
    )


if __name__ == "__main__":
    asyncio.run(main())
