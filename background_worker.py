"""Background Worker for the reminder core.

Drains the embedding outbox so the similarity index follows reminder
mutations.

The worker:
- Runs continuously, checking the outbox every few seconds (configurable)
- Builds the content string for each changed reminder, embeds it and upserts
  the embedding record; deletes the record for deleted reminders
- Records failed attempts on the event and retries it on later passes, parking
  it as failed after the configured number of attempts
- Periodically removes embedding records whose reminder no longer exists
"""

import asyncio
import signal
import sys

import services
from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'worker.log')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def run_once(indexer, iteration: int) -> dict:
    """One worker pass: drain a batch, and every Nth pass clean up orphans."""
    stats = await indexer.process_pending(settings.INDEXER_BATCH_SIZE)
    if settings.INDEXER_CLEANUP_EVERY and iteration % settings.INDEXER_CLEANUP_EVERY == 0:
        stats['orphans_removed'] = await indexer.cleanup()
    return stats


async def worker_loop(indexer=None):
    """Main worker loop that runs continuously.

    Processes the outbox at the configured interval until a shutdown signal.
    """
    logger.info("Embedding indexer worker started")
    logger.info(f"Worker enabled: {settings.INDEXER_ENABLED}")
    logger.info(f"Check interval: {settings.INDEXER_CHECK_INTERVAL} seconds")
    logger.info(f"Embedding model: {settings.BEDROCK_EMBED_MODEL_ID}")

    if not settings.INDEXER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    indexer = indexer or services.get_indexer()

    iteration = 0
    while not shutdown_requested:
        try:
            iteration += 1
            logger.debug(f"Worker iteration {iteration} started")

            stats = await run_once(indexer, iteration)

            if any(stats.values()):
                logger.info(f"Worker iteration {iteration}: {stats}")
            else:
                logger.debug(f"Worker iteration {iteration}: outbox empty")

            # Break sleep into 1-second intervals to allow quick shutdown
            for _ in range(settings.INDEXER_CHECK_INTERVAL):
                if shutdown_requested:
                    break
                await asyncio.sleep(1)

        except Exception as e:
            logger.error(f"Error in worker loop iteration {iteration}: {str(e)}", exc_info=True)
            await asyncio.sleep(5)

    logger.info("Background worker shutting down gracefully")


def main():
    """Main entry point for the background worker."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Core - Embedding Indexer Worker")
    logger.info("=" * 60)

    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
