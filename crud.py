"""CRUD operations for the reminder core.

Database operations for reminders, the tag/priority taxonomy, embedding records
and the embedding outbox. Every reminder query is scoped by ``owner_id``.

Reminder writes enqueue an outbox event in the same transaction, so the
embedding indexer sees every mutation that committed and nothing that didn't.
"""

from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import Dict, List, Optional, Tuple
import uuid
from datetime import date, datetime, timezone

from database import (
    EmbeddingOutbox, OutboxStatusEnum, Priority, Reminder, ReminderEmbedding,
    RepeatEnum, Tag,
)
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')

# Columns that feed the embedding content string
INDEXED_FIELDS = ('title', 'date', 'time', 'tag_id')


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

def create_tag(db: Session, owner_id: str, name: str, color: Optional[str] = None) -> Tag:
    tag = Tag(id=str(uuid.uuid4()), owner_id=owner_id, name=name, color=color)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def create_priority(
    db: Session,
    owner_id: str,
    name: str,
    rank: int,
    color: Optional[str] = None
) -> Priority:
    priority = Priority(id=str(uuid.uuid4()), owner_id=owner_id, name=name, rank=rank, color=color)
    db.add(priority)
    db.commit()
    db.refresh(priority)
    return priority


def find_tag_by_name(db: Session, owner_id: str, name: str) -> Optional[Tag]:
    """Case-insensitive exact match against the owner's tags."""
    return db.query(Tag).filter(
        Tag.owner_id == owner_id,
        func.lower(Tag.name) == name.strip().lower()
    ).first()


def find_priority_by_name(db: Session, owner_id: str, name: str) -> Optional[Priority]:
    """Case-insensitive exact match against the owner's priorities."""
    return db.query(Priority).filter(
        Priority.owner_id == owner_id,
        func.lower(Priority.name) == name.strip().lower()
    ).first()


def get_tag(db: Session, tag_id: str, owner_id: str) -> Optional[Tag]:
    return db.query(Tag).filter(Tag.id == tag_id, Tag.owner_id == owner_id).first()


def get_priority(db: Session, priority_id: str, owner_id: str) -> Optional[Priority]:
    return db.query(Priority).filter(Priority.id == priority_id, Priority.owner_id == owner_id).first()


def check_taxonomy_ids(
    db: Session,
    owner_id: str,
    tag_id: Optional[str] = None,
    priority_id: Optional[str] = None
) -> Tuple[Dict[str, Optional[str]], List[str]]:
    """Keep raw tag/priority ids only when ``owner_id`` owns them.

    An id that belongs to another user, or to nothing, is dropped to None with
    a warning, the same way an unknown name is.

    Returns:
        Tuple of (ids, warnings). ``ids`` only contains keys for ids that were given.
    """
    ids: Dict[str, Optional[str]] = {}
    warnings: List[str] = []

    if tag_id:
        owned = get_tag(db, tag_id, owner_id) is not None
        ids['tag_id'] = tag_id if owned else None
        if not owned:
            warnings.append(f"Tag '{tag_id}' was not found; the reminder was saved without a tag.")

    if priority_id:
        owned = get_priority(db, priority_id, owner_id) is not None
        ids['priority_id'] = priority_id if owned else None
        if not owned:
            warnings.append(f"Priority '{priority_id}' was not found; the reminder was saved without a priority.")

    return ids, warnings


def resolve_taxonomy(
    db: Session,
    owner_id: str,
    tag_name: Optional[str] = None,
    priority_name: Optional[str] = None
) -> Tuple[Dict[str, Optional[str]], List[str]]:
    """Resolve tag/priority names to ids.

    A name that matches nothing resolves to None and adds a warning; it is
    never an error.

    Args:
        db: Database session
        owner_id: Owning user
        tag_name: Optional free-text tag name
        priority_name: Optional free-text priority name

    Returns:
        Tuple of (ids, warnings). ``ids`` only contains keys for names that were given.
    """
    ids: Dict[str, Optional[str]] = {}
    warnings: List[str] = []

    if tag_name:
        tag = find_tag_by_name(db, owner_id, tag_name)
        ids['tag_id'] = tag.id if tag else None
        if not tag:
            warnings.append(f"No tag named '{tag_name}' was found; the reminder was saved without a tag.")

    if priority_name:
        priority = find_priority_by_name(db, owner_id, priority_name)
        ids['priority_id'] = priority.id if priority else None
        if not priority:
            warnings.append(
                f"No priority named '{priority_name}' was found; the reminder was saved without a priority."
            )

    return ids, warnings


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

def _enqueue(db: Session, reminder_id: str, owner_id: str, event: str) -> None:
    db.add(EmbeddingOutbox(
        reminder_id=reminder_id,
        owner_id=owner_id,
        event=event,
        status=OutboxStatusEnum.PENDING,
        attempts=0,
        created_at=datetime.now(timezone.utc)
    ))


def _as_repeat(value) -> RepeatEnum:
    if isinstance(value, RepeatEnum):
        return value
    return RepeatEnum[(value or 'none').upper()]


def create_reminder(db: Session, reminder_data: dict) -> Reminder:
    """Create a new reminder and enqueue its embedding.

    Args:
        db: Database session
        reminder_data: Dictionary with reminder fields
            - owner_id: str
            - title: str
            - date: Optional[date]
            - time: Optional[str] (HH:mm)
            - repeat: Optional[str]
            - repeat_until: Optional[date]
            - tag_id / priority_id: Optional[str]
            - notes: Optional[str]

    Returns:
        Reminder: Created reminder object

    Raises:
        SQLAlchemyError: On database errors
    """
    now = datetime.now(timezone.utc)
    repeat = _as_repeat(reminder_data.get('repeat'))

    db_reminder = Reminder(
        id=str(uuid.uuid4()),
        owner_id=reminder_data['owner_id'],
        title=reminder_data['title'],
        date=reminder_data.get('date'),
        time=reminder_data.get('time'),
        repeat=repeat,
        repeat_until=reminder_data.get('repeat_until') if repeat != RepeatEnum.NONE else None,
        tag_id=reminder_data.get('tag_id'),
        priority_id=reminder_data.get('priority_id'),
        notes=reminder_data.get('notes'),
        completed=bool(reminder_data.get('completed', False)),
        created_at=now,
        updated_at=now
    )

    db.add(db_reminder)
    _enqueue(db, db_reminder.id, db_reminder.owner_id, 'upsert')
    db.commit()
    db.refresh(db_reminder)
    logger.info(f"Created reminder {db_reminder.id} for {db_reminder.owner_id}")
    return db_reminder


def get_reminder(db: Session, reminder_id: str, owner_id: str) -> Optional[Reminder]:
    """Get a specific reminder by ID, only if ``owner_id`` owns it."""
    return db.query(Reminder).filter(
        Reminder.id == reminder_id,
        Reminder.owner_id == owner_id
    ).first()


def get_reminders_by_owner(db: Session, owner_id: str, limit: int = 50) -> List[Reminder]:
    return db.query(Reminder).filter(
        Reminder.owner_id == owner_id
    ).order_by(Reminder.date.desc(), Reminder.time).limit(limit).all()


def list_by_date_range(db: Session, owner_id: str, start: date, end: date) -> List[Reminder]:
    """All reminders dated within ``[start, end]``, ordered by time (untimed last)."""
    return db.query(Reminder).filter(
        Reminder.owner_id == owner_id,
        Reminder.date >= start,
        Reminder.date <= end
    ).order_by(Reminder.time.is_(None), Reminder.time, Reminder.date).all()


def update_reminder(
    db: Session,
    reminder_id: str,
    owner_id: str,
    updates: dict
) -> Optional[Reminder]:
    """Apply a partial update.

    Keys with a None value are ignored, except ``tag_id``/``priority_id`` which
    may be cleared explicitly. An embedding refresh is enqueued only when a
    field that feeds the content string changed.

    Returns:
        Optional[Reminder]: Updated reminder object if found, None otherwise
    """
    reminder = get_reminder(db, reminder_id, owner_id)
    if not reminder:
        return None

    changed = set()
    for key, value in updates.items():
        if value is None and key not in ('tag_id', 'priority_id'):
            continue
        if key == 'repeat':
            value = _as_repeat(value)
        if getattr(reminder, key) != value:
            setattr(reminder, key, value)
            changed.add(key)

    if reminder.repeat == RepeatEnum.NONE:
        reminder.repeat_until = None

    reminder.updated_at = datetime.now(timezone.utc)

    if changed.intersection(INDEXED_FIELDS):
        _enqueue(db, reminder.id, reminder.owner_id, 'upsert')

    db.commit()
    db.refresh(reminder)
    return reminder


def delete_reminder(db: Session, reminder_id: str, owner_id: str) -> bool:
    """Delete a reminder.

    Returns:
        bool: True if deleted, False if not found for this owner
    """
    reminder = get_reminder(db, reminder_id, owner_id)
    if not reminder:
        return False

    db.delete(reminder)
    _enqueue(db, reminder_id, owner_id, 'delete')
    db.commit()
    return True


def get_reminders_count(db: Session, owner_id: str) -> int:
    return db.query(Reminder).filter(Reminder.owner_id == owner_id).count()


# ---------------------------------------------------------------------------
# Embedding records
# ---------------------------------------------------------------------------

def upsert_embedding(
    db: Session,
    reminder_id: str,
    owner_id: str,
    content: str,
    vector: List[float],
    reminder_date: Optional[date] = None
) -> ReminderEmbedding:
    record = db.query(ReminderEmbedding).filter(ReminderEmbedding.reminder_id == reminder_id).first()
    now = datetime.now(timezone.utc)
    if record is None:
        record = ReminderEmbedding(reminder_id=reminder_id, owner_id=owner_id)
        db.add(record)
    record.content = content
    record.vector = list(vector)
    record.date = reminder_date
    record.updated_at = now
    db.commit()
    db.refresh(record)
    return record


def delete_embedding(db: Session, reminder_id: str) -> bool:
    deleted = db.query(ReminderEmbedding).filter(ReminderEmbedding.reminder_id == reminder_id).delete()
    db.commit()
    return deleted > 0


def get_embedding(db: Session, reminder_id: str) -> Optional[ReminderEmbedding]:
    return db.query(ReminderEmbedding).filter(ReminderEmbedding.reminder_id == reminder_id).first()


def get_embedding_candidates(db: Session, owner_id: str) -> List[Tuple[ReminderEmbedding, Reminder]]:
    """Embedding records joined to live reminders of the owner.

    Orphaned records (reminder already deleted) drop out of the join.
    """
    return db.query(ReminderEmbedding, Reminder).join(
        Reminder, Reminder.id == ReminderEmbedding.reminder_id
    ).filter(
        ReminderEmbedding.owner_id == owner_id,
        Reminder.owner_id == owner_id
    ).all()


def delete_orphan_embeddings(db: Session) -> int:
    """Remove embedding records whose reminder no longer exists."""
    live_ids = db.query(Reminder.id)
    deleted = db.query(ReminderEmbedding).filter(
        ~ReminderEmbedding.reminder_id.in_(live_ids)
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


# ---------------------------------------------------------------------------
# Embedding outbox
# ---------------------------------------------------------------------------

def get_pending_events(db: Session, limit: int = 50) -> List[EmbeddingOutbox]:
    return db.query(EmbeddingOutbox).filter(
        EmbeddingOutbox.status == OutboxStatusEnum.PENDING
    ).order_by(EmbeddingOutbox.id).limit(limit).all()


def mark_event_done(db: Session, event_id: int) -> None:
    event = db.query(EmbeddingOutbox).filter(EmbeddingOutbox.id == event_id).first()
    if event is None:
        return
    event.status = OutboxStatusEnum.DONE
    event.processed_at = datetime.now(timezone.utc)
    db.commit()


def record_event_failure(db: Session, event_id: int, error: str, max_attempts: int) -> int:
    """Count a failed attempt; after ``max_attempts`` the event is parked as FAILED."""
    event = db.query(EmbeddingOutbox).filter(EmbeddingOutbox.id == event_id).first()
    if event is None:
        return 0
    event.attempts = (event.attempts or 0) + 1
    event.last_error = error
    if event.attempts >= max_attempts:
        event.status = OutboxStatusEnum.FAILED
        event.processed_at = datetime.now(timezone.utc)
        logger.error(f"Outbox event {event.id} for reminder {event.reminder_id} failed permanently: {error}")
    db.commit()
    return event.attempts


def count_events(db: Session, status: OutboxStatusEnum) -> int:
    return db.query(EmbeddingOutbox).filter(EmbeddingOutbox.status == status).count()


def enqueue_backfill(db: Session, owner_id: str) -> int:
    """Enqueue an embedding refresh for every reminder of ``owner_id``."""
    reminder_ids = [row.id for row in db.query(Reminder.id).filter(Reminder.owner_id == owner_id)]
    for reminder_id in reminder_ids:
        _enqueue(db, reminder_id, owner_id, 'upsert')
    db.commit()
    return len(reminder_ids)
