"""Async store adapters over the synchronous CRUD layer.

``ReminderStore`` and ``EmbeddingStore`` give the agent loop, the retrieval
engine and the indexer an owner-scoped, awaitable view of the database. Each
call opens its own session in a worker thread, so independent reads (the two
retrieval fetches, concurrent tool handlers) never share a session.

Database failures surface as ``StoreUnavailableError`` and calls running past
``STORE_TIMEOUT_SECONDS`` as ``ProviderTimeoutError``; "not found" is a
``None``/``False`` return, never an exception.
"""

import asyncio
import math
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import crud
import database
from config import settings
from errors import EmbeddingError, ProviderTimeoutError, StoreUnavailableError
from logger_config import setup_logger
from schemas import EvidenceItem, ReminderResponse

logger = setup_logger(__name__, 'store.log')


class _SessionRunner:
    def __init__(self, session_factory: Optional[sessionmaker] = None, timeout: Optional[float] = None):
        self._session_factory = session_factory or database.SessionLocal
        self.timeout = timeout or settings.STORE_TIMEOUT_SECONDS

    async def _run(self, fn: Callable[..., Any], *args) -> Any:
        def call():
            db: Session = self._session_factory()
            try:
                return fn(db, *args)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error in {fn.__name__}: {e}")
                raise StoreUnavailableError(f"Reminder store unavailable: {e}") from e
            finally:
                db.close()

        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError:
            # the worker thread finishes on its own and closes its session
            logger.error(f"{fn.__name__} exceeded {self.timeout}s")
            raise ProviderTimeoutError(f"Reminder store exceeded {self.timeout}s")


class ReminderStore(_SessionRunner):
    """Owner-scoped reminder CRUD with tag/priority name resolution."""

    async def insert(
        self,
        owner_id: str,
        fields: Dict[str, Any],
        tag_name: Optional[str] = None,
        priority_name: Optional[str] = None
    ) -> Tuple[ReminderResponse, List[str]]:
        def op(db: Session):
            ids, warnings = crud.resolve_taxonomy(db, owner_id, tag_name, priority_name)
            data = {**fields, **ids, 'owner_id': owner_id}
            reminder = crud.create_reminder(db, data)
            return ReminderResponse.model_validate(reminder), warnings

        return await self._run(op)

    async def update(
        self,
        owner_id: str,
        reminder_id: str,
        fields: Dict[str, Any],
        tag_name: Optional[str] = None,
        priority_name: Optional[str] = None
    ) -> Optional[Tuple[ReminderResponse, List[str]]]:
        def op(db: Session):
            if crud.get_reminder(db, reminder_id, owner_id) is None:
                return None
            ids, warnings = crud.resolve_taxonomy(db, owner_id, tag_name, priority_name)
            reminder = crud.update_reminder(db, reminder_id, owner_id, {**fields, **ids})
            return ReminderResponse.model_validate(reminder), warnings

        return await self._run(op)

    async def delete(self, owner_id: str, reminder_id: str) -> bool:
        return await self._run(crud.delete_reminder, reminder_id, owner_id)

    async def get(self, owner_id: str, reminder_id: str) -> Optional[ReminderResponse]:
        def op(db: Session):
            reminder = crud.get_reminder(db, reminder_id, owner_id)
            return ReminderResponse.model_validate(reminder) if reminder else None

        return await self._run(op)

    async def list_by_date_range(self, owner_id: str, start: date, end: date) -> List[ReminderResponse]:
        def op(db: Session):
            return [ReminderResponse.model_validate(r) for r in crud.list_by_date_range(db, owner_id, start, end)]

        return await self._run(op)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if not a or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingStore(_SessionRunner):
    """Embedding records, similarity search and the indexer outbox."""

    async def upsert(
        self,
        reminder_id: str,
        owner_id: str,
        content: str,
        vector: List[float],
        reminder_date: Optional[date] = None
    ) -> None:
        def op(db: Session):
            crud.upsert_embedding(db, reminder_id, owner_id, content, vector, reminder_date)

        await self._run(op)

    async def delete(self, reminder_id: str) -> bool:
        return await self._run(crud.delete_embedding, reminder_id)

    async def similarity_search(
        self,
        owner_id: str,
        query_vector: List[float],
        k: int,
        threshold: float
    ) -> List[EvidenceItem]:
        """Top-``k`` live reminders of ``owner_id`` by cosine similarity.

        Raises:
            EmbeddingError: If ``query_vector`` is not a list of numbers
        """
        if not isinstance(query_vector, list):
            raise EmbeddingError(f"Query embedding must be an array, got {type(query_vector).__name__}")

        def op(db: Session):
            scored = []
            for record, reminder in crud.get_embedding_candidates(db, owner_id):
                if not isinstance(record.vector, list) or len(record.vector) != len(query_vector):
                    logger.warning(f"Skipping malformed embedding for reminder {record.reminder_id}")
                    continue
                similarity = cosine_similarity(query_vector, record.vector)
                if similarity <= threshold:
                    continue
                scored.append(EvidenceItem(
                    reminder_id=reminder.id,
                    title=reminder.title,
                    date=reminder.date,
                    time=reminder.time,
                    completed=reminder.completed,
                    tag_id=reminder.tag_id,
                    priority_id=reminder.priority_id,
                    score=max(0.0, min(1.0, similarity))
                ))
            scored.sort(key=lambda item: item.score, reverse=True)
            return scored[:k]

        return await self._run(op)

    async def cleanup_orphans(self) -> int:
        return await self._run(crud.delete_orphan_embeddings)

    async def pending_events(self, limit: int) -> List[Dict[str, Any]]:
        def op(db: Session):
            return [
                {
                    'id': e.id,
                    'reminder_id': e.reminder_id,
                    'owner_id': e.owner_id,
                    'event': e.event,
                    'attempts': e.attempts,
                }
                for e in crud.get_pending_events(db, limit)
            ]

        return await self._run(op)

    async def mark_done(self, event_id: int) -> None:
        await self._run(crud.mark_event_done, event_id)

    async def record_failure(self, event_id: int, error: str, max_attempts: int) -> int:
        return await self._run(crud.record_event_failure, event_id, error, max_attempts)

    async def load_source(self, reminder_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        """The fields the content builder needs, with the tag name resolved."""
        def op(db: Session):
            reminder = crud.get_reminder(db, reminder_id, owner_id)
            if reminder is None:
                return None
            tag = crud.get_tag(db, reminder.tag_id, owner_id) if reminder.tag_id else None
            return {
                'title': reminder.title,
                'date': reminder.date,
                'time': reminder.time,
                'tag_name': tag.name if tag else None,
            }

        return await self._run(op)

    async def enqueue_backfill(self, owner_id: str) -> int:
        return await self._run(crud.enqueue_backfill, owner_id)
