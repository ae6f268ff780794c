"""Database module for the reminder core.

SQLAlchemy models and session management. Every row carries ``owner_id`` and
every query in ``crud`` filters on it.

Dates are stored as ``Date`` columns and times as ``HH:mm`` strings, matching
the wire format used by clients.
"""

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer,
    JSON, String, Text, create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import enum

from config import settings

# SQLAlchemy Base
Base = declarative_base()


class RepeatEnum(enum.Enum):
    """Recurrence patterns for reminders"""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class OutboxStatusEnum(enum.Enum):
    """Lifecycle of an embedding outbox event"""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class Tag(Base):
    """User-scoped named label."""

    __tablename__ = "tags"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)


class Priority(Base):
    """User-scoped priority level. Lower rank means higher priority."""

    __tablename__ = "priorities"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    rank = Column(Integer, nullable=False, default=0)


class Reminder(Base):
    """Reminder model - stores all reminder data.

    ``repeat_until`` is only kept when ``repeat`` is not NONE; crud clears it
    otherwise.
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, doc="Unique reminder ID (UUID)")
    owner_id = Column(String, nullable=False, index=True, doc="Owning user")

    title = Column(String, nullable=False, doc="Reminder title")
    date = Column(Date, nullable=True, doc="Calendar date the reminder is for")
    time = Column(String(5), nullable=True, doc="24-hour clock time, HH:mm")
    repeat = Column(SQLEnum(RepeatEnum), default=RepeatEnum.NONE, nullable=False)
    repeat_until = Column(Date, nullable=True)
    tag_id = Column(String, ForeignKey("tags.id", ondelete="SET NULL"), nullable=True)
    priority_id = Column(String, ForeignKey("priorities.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)
    completed = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_owner_date', 'owner_id', 'date'),
    )

    def __repr__(self):
        return (
            f"<Reminder(id={self.id}, owner={self.owner_id}, "
            f"title={self.title}, date={self.date}, time={self.time})>"
        )


class ReminderEmbedding(Base):
    """Vector shadow of a reminder's natural-language content.

    No foreign key on ``reminder_id``: rows may outlive their reminder until the
    cleanup pass removes them.
    """

    __tablename__ = "reminder_embeddings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String, nullable=False, unique=True)
    owner_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    date = Column(Date, nullable=True, index=True)
    vector = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class EmbeddingOutbox(Base):
    """Reminder mutation events waiting for the indexer worker."""

    __tablename__ = "embedding_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String, nullable=False)
    owner_id = Column(String, nullable=False)
    event = Column(String, nullable=False, doc="'upsert' or 'delete'")
    status = Column(SQLEnum(OutboxStatusEnum), default=OutboxStatusEnum.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Build an engine for ``database_url``, create tables, return a session factory."""
    kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Session Factory
SessionLocal = create_session_factory(settings.DATABASE_URL)
engine = SessionLocal.kw["bind"]


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
