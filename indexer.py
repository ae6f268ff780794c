"""Embedding indexer.

Keeps ``reminder_embeddings`` in step with reminder mutations by draining the
outbox that ``crud`` writes alongside every create/update/delete. Reminder
writes never wait on this; searches may see stale semantic results until the
next drain.
"""

from datetime import date
from typing import Dict, Optional

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'worker.log')


def _natural_time(value: str) -> str:
    hour, minute = (int(part) for part in value.split(':'))
    suffix = 'pm' if hour >= 12 else 'am'
    hour12 = hour % 12 or 12
    return f"{hour12}:{minute:02d}{suffix}" if minute else f"{hour12}{suffix}"


def build_content(title: str,
                  reminder_date: Optional[date] = None,
                  time: Optional[str] = None,
                  tag_name: Optional[str] = None) -> str:
    """Natural-language string embedded for a reminder.

    Example: ``"Buy groceries on Wednesday, February 18, 2026 at 7pm [Errands]"``
    """
    content = title
    if reminder_date:
        content += f" on {reminder_date:%A}, {reminder_date:%B} {reminder_date.day}, {reminder_date.year}"
    if time:
        content += f" at {_natural_time(time)}"
    if tag_name:
        content += f" [{tag_name}]"
    return content


class EmbeddingIndexer:
    """Applies pending outbox events to the embedding store.

    Args:
        embedding_store: ``store.EmbeddingStore``
        embedder: Object with ``async embed(text) -> List[float]``
        max_attempts: Failures before an event is parked as failed
    """

    def __init__(self, embedding_store, embedder, max_attempts: Optional[int] = None):
        self.embedding_store = embedding_store
        self.embedder = embedder
        self.max_attempts = max_attempts or settings.INDEXER_MAX_ATTEMPTS

    async def _apply(self, event: Dict) -> str:
        if event['event'] == 'delete':
            await self.embedding_store.delete(event['reminder_id'])
            return 'deleted'

        source = await self.embedding_store.load_source(event['reminder_id'], event['owner_id'])
        if source is None:
            # deleted before we got to it; its own delete event cleans up
            return 'skipped'

        content = build_content(source['title'], source['date'], source['time'], source['tag_name'])
        vector = await self.embedder.embed(content)
        await self.embedding_store.upsert(event['reminder_id'], event['owner_id'], content, vector, source['date'])
        logger.info(f"Indexed reminder {event['reminder_id']}: \"{content}\"")
        return 'indexed'

    async def process_pending(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """Drain up to ``batch_size`` pending events.

        A failing event is recorded (attempt count, last error) and retried on a
        later call; it never blocks the rest of the batch.

        Returns:
            Counts keyed by outcome: indexed, deleted, skipped, failed
        """
        stats = {'indexed': 0, 'deleted': 0, 'skipped': 0, 'failed': 0}
        events = await self.embedding_store.pending_events(batch_size or settings.INDEXER_BATCH_SIZE)

        for event in events:
            try:
                outcome = await self._apply(event)
            except Exception as e:
                attempts = await self.embedding_store.record_failure(event['id'], str(e), self.max_attempts)
                logger.warning(
                    f"Indexing attempt {attempts}/{self.max_attempts} failed for reminder {event['reminder_id']}: {e}"
                )
                stats['failed'] += 1
                continue

            await self.embedding_store.mark_done(event['id'])
            stats[outcome] += 1

        if events:
            logger.info(f"Outbox batch processed: {stats}")
        return stats

    async def cleanup(self) -> int:
        """Remove embedding records whose reminder no longer exists."""
        removed = await self.embedding_store.cleanup_orphans()
        if removed:
            logger.info(f"Removed {removed} orphaned embedding record(s)")
        return removed
