"""Pydantic schemas for the reminder core.

Request/response models for the REST API and the typed input contracts of the
agent tools. Dates travel as ``YYYY-MM-DD`` and times as 24-hour ``HH:mm`` on
every boundary; Pydantic parses dates into ``datetime.date`` objects.
"""

import re
import datetime as dt
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RepeatValue = Literal["none", "daily", "weekly", "monthly", "yearly"]

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def normalize_time(value: Optional[str]) -> Optional[str]:
    """Normalize ``H:mm``/``HH:mm`` to zero-padded ``HH:mm``.

    Raises:
        ValueError: If the value is not a valid 24-hour clock time
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("time must be a string")
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError("time must be HH:mm in 24-hour format")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError("time must be HH:mm in 24-hour format")
    return f"{hour:02d}:{minute:02d}"


class _TimeFieldMixin(BaseModel):
    @field_validator("time", mode="before", check_fields=False)
    @classmethod
    def _check_time(cls, v):
        return normalize_time(v)


class _RepeatUntilMixin(BaseModel):
    @model_validator(mode="after")
    def _check_repeat_until(self):
        """``repeat_until`` never precedes ``date`` and is dropped for non-repeating reminders."""
        if self.repeat_until is None:
            return self
        if self.date is not None and self.repeat_until < self.date:
            raise ValueError("repeat_until must not be before date")
        if self.repeat == "none":
            self.repeat_until = None
        return self


# ---------------------------------------------------------------------------
# Reminders (direct manipulation)
# ---------------------------------------------------------------------------

class ReminderCreate(_TimeFieldMixin, _RepeatUntilMixin):
    """Schema for creating a reminder through the REST API."""

    owner_id: str = Field(..., min_length=1, description="Owning user ID")
    title: str = Field(..., min_length=1, max_length=200, examples=["Dentist appointment"])
    date: Optional[dt.date] = Field(None, description="Calendar date (YYYY-MM-DD)")
    time: Optional[str] = Field(None, description="24-hour time (HH:mm)")
    repeat: RepeatValue = Field("none", description="Recurrence pattern")
    repeat_until: Optional[dt.date] = Field(None, description="Last date of recurrence")
    tag_id: Optional[str] = None
    priority_id: Optional[str] = None
    tag_name: Optional[str] = Field(None, description="Tag name, resolved case-insensitively")
    priority_name: Optional[str] = Field(None, description="Priority name, resolved case-insensitively")
    notes: Optional[str] = None


class ReminderUpdate(_TimeFieldMixin, _RepeatUntilMixin):
    """Schema for updating a reminder.

    All fields are optional - only provided fields will be updated.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    date: Optional[dt.date] = None
    time: Optional[str] = None
    repeat: Optional[RepeatValue] = None
    repeat_until: Optional[dt.date] = None
    tag_id: Optional[str] = None
    priority_id: Optional[str] = None
    tag_name: Optional[str] = None
    priority_name: Optional[str] = None
    notes: Optional[str] = None
    completed: Optional[bool] = None


class ReminderResponse(BaseModel):
    """Schema for reminder responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: str
    date: Optional[dt.date] = None
    time: Optional[str] = None
    repeat: RepeatValue = "none"
    repeat_until: Optional[dt.date] = None
    tag_id: Optional[str] = None
    priority_id: Optional[str] = None
    notes: Optional[str] = None
    completed: bool = False
    created_at: dt.datetime
    updated_at: dt.datetime
    warnings: List[str] = Field(default_factory=list, description="Tag/priority names that did not resolve")

    @field_validator("repeat", mode="before")
    @classmethod
    def _enum_to_value(cls, v):
        return getattr(v, "value", v)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class EvidenceItem(BaseModel):
    """A reminder backing a search answer, with its relevance score."""

    reminder_id: str
    title: str
    date: Optional[dt.date] = None
    time: Optional[str] = None
    completed: bool = False
    tag_id: Optional[str] = None
    priority_id: Optional[str] = None
    score: float


class SearchRequest(BaseModel):
    """Search request; an explicit range (or legacy target_date) overrides extraction."""

    query: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    target_date: Optional[dt.date] = Field(None, description="Single day to search")
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    client_date: Optional[dt.date] = Field(None, description="The caller's local 'today'")

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date and not self.start_date:
            raise ValueError("end_date requires start_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SearchResponse(BaseModel):
    answer: str
    follow_up: str
    evidence: List[EvidenceItem]
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ConversationTurn(BaseModel):
    """A prior turn. Content is plain text or provider content blocks."""

    role: Literal["user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]


class ConverseRequest(BaseModel):
    query: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    client_date: Optional[dt.date] = None
    conversation_history: List[ConversationTurn] = Field(default_factory=list)


class ToolCallLogEntry(BaseModel):
    tool_name: str
    input: Dict[str, Any]
    result: Dict[str, Any]
    iteration_index: int


class ConverseResponse(BaseModel):
    message: str
    tool_calls: List[ToolCallLogEntry]
    iterations: int
    state: str
    warning: Optional[str] = None
    draft: Optional[Dict[str, Any]] = Field(
        None, description="Field suggestions for the presentation layer when a draft was produced"
    )


# ---------------------------------------------------------------------------
# Tool input contracts
# ---------------------------------------------------------------------------

class DraftReminderInput(_TimeFieldMixin):
    """Prepare a reminder for the user to confirm. Nothing is saved."""

    title: str = Field(..., min_length=1, description="Brief reminder title (max 6 words), the main task from the request.")
    date: dt.date = Field(..., description="Date in YYYY-MM-DD format, computed from relative references like 'tomorrow'.")
    time: Optional[str] = Field(None, description="Time in HH:mm 24-hour format. Only include if the user gave a time.")
    repeat: Optional[RepeatValue] = Field(None, description="Recurrence pattern; 'none' unless the user asked for repetition.")
    tag_name: Optional[str] = Field(None, description="Name of one of the user's tags, if mentioned.")
    priority_name: Optional[str] = Field(None, description="Name of one of the user's priority levels, if mentioned.")
    notes: Optional[str] = Field(None, description="Extra details the user mentioned.")


class CreateReminderInput(_TimeFieldMixin, _RepeatUntilMixin):
    """Save a new reminder."""

    title: str = Field(..., min_length=1, description="Brief reminder title (max 6 words), the main task from the request.")
    date: dt.date = Field(..., description="Date in YYYY-MM-DD format, computed from relative references like 'tomorrow'.")
    time: Optional[str] = Field(None, description="Time in HH:mm 24-hour format. Only include if the user gave a time.")
    repeat: RepeatValue = Field("none", description="Recurrence pattern; 'none' unless the user asked for repetition.")
    repeat_until: Optional[dt.date] = Field(None, description="Last date a repeating reminder recurs (YYYY-MM-DD).")
    tag_name: Optional[str] = Field(None, description="Name of one of the user's tags, if mentioned.")
    priority_name: Optional[str] = Field(None, description="Name of one of the user's priority levels, if mentioned.")
    notes: Optional[str] = Field(None, description="Extra details the user mentioned.")


class SearchRemindersInput(BaseModel):
    """Find existing reminders by topic, date or date range."""

    query: Optional[str] = Field(None, description="Natural language search, e.g. 'doctor', 'what's tomorrow', 'gym reminders'.")
    start_date: Optional[dt.date] = Field(None, description="First day to search (YYYY-MM-DD) when the user asks about a day or period.")
    end_date: Optional[dt.date] = Field(None, description="Last day to search (YYYY-MM-DD); omit for a single day.")

    @model_validator(mode="after")
    def _check_range(self):
        if not (self.query and self.query.strip()) and not self.start_date:
            raise ValueError("query or start_date is required")
        if self.end_date and not self.start_date:
            raise ValueError("end_date requires start_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class UpdateReminderInput(_TimeFieldMixin):
    """Change, reschedule or complete an existing reminder."""

    reminder_id: str = Field(..., min_length=1, description="ID of the reminder, taken from a previous search result.")
    title: Optional[str] = Field(None, min_length=1, description="New title. Only include to rename.")
    date: Optional[dt.date] = Field(None, description="New date in YYYY-MM-DD format. Only include to reschedule.")
    time: Optional[str] = Field(None, description="New time in HH:mm 24-hour format.")
    completed: Optional[bool] = Field(None, description="True to mark the reminder done, false to reopen it.")
    notes: Optional[str] = Field(None, description="Replacement notes.")
    tag_name: Optional[str] = Field(None, description="New tag name.")
    priority_name: Optional[str] = Field(None, description="New priority name.")


class DeleteReminderInput(BaseModel):
    """Permanently delete a reminder."""

    reminder_id: str = Field(..., min_length=1, description="ID of the reminder, taken from a previous search result.")
