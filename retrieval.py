"""
Hybrid retrieval: exact date-range rows plus vector-similarity rows.

Date questions ("what's on today", "this week") are answered deterministically
from the reminder table, so they never depend on the embedding index being
current. Everything else is answered by the completion model, constrained to
the similarity evidence passed to it as JSON.
"""

import asyncio
import json
from datetime import date
from typing import List, Optional, Tuple

from config import settings
from logger_config import setup_logger
from schemas import EvidenceItem, ReminderResponse, SearchResponse
from temporal import DateRange, TemporalResolver, reference_date as default_reference_date

logger = setup_logger(__name__, 'search.log')

FALLBACK_ANSWER = "I'm sorry, I couldn't generate an answer."
FALLBACK_FOLLOW_UP = "Anything else I can help you with?"


def _evidence_sort_key(item: EvidenceItem):
    return (-item.score, item.time is None, item.time or '')


def _as_evidence(reminder: ReminderResponse) -> EvidenceItem:
    return EvidenceItem(
        reminder_id=reminder.id,
        title=reminder.title,
        date=reminder.date,
        time=reminder.time,
        completed=reminder.completed,
        tag_id=reminder.tag_id,
        priority_id=reminder.priority_id,
        score=1.0
    )


def _listing(items: List[EvidenceItem], with_dates: bool) -> str:
    parts = []
    for item in items:
        when = ' '.join(p for p in ((item.date.isoformat() if with_dates and item.date else None), item.time) if p)
        entry = f"{item.title} ({when})" if when else item.title
        if item.completed:
            entry += " (completed)"
        parts.append(entry)
    return ', '.join(parts)


def deterministic_answer(items: List[EvidenceItem], window: DateRange) -> Tuple[str, str]:
    """Answer and follow-up for a resolved date range, without a model call."""
    start, end = window.start.isoformat(), window.end.isoformat()

    if not items:
        if window.is_range:
            return (f"Nothing between {start} and {end}.",
                    "Want me to add a reminder for one of those days? What should it be and what time?")
        return (f"Nothing scheduled for {start}.",
                "Want me to add a reminder for that day? What should it be and what time?")

    listing = _listing(items, with_dates=window.is_range)
    answer = f"Reminders from {start} to {end}: {listing}." if window.is_range else f"{start}: {listing}."
    if any(item.time is None for item in items):
        follow_up = "Want me to set a time for any of these or add another reminder?"
    else:
        follow_up = "Want to add another reminder for that day?"
    return answer, follow_up


def _answer_prompt(today: date, evidence: List[EvidenceItem]) -> str:
    rows = [
        {
            "title": item.title,
            "date": item.date.isoformat() if item.date else None,
            "time": item.time,
            "completed": item.completed,
            "score": round(item.score, 3),
        }
        for item in evidence
    ]
    return f"""You are a reminders assistant. Today is {today:%A}, {today:%B} {today.day}, {today.year} ({today.isoformat()}).

ALL_RELEVANT_REMINDERS:
{json.dumps(rows, indent=2)}

INSTRUCTIONS:
- Answer the user's query using ONLY the reminders above. Never invent reminders.
- Be direct and conversational.
- Mention if something is already completed when relevant.
- Ask ONE helpful follow-up question.
- Do NOT explain date math or reasoning.

Return ONLY a JSON object:
{{"answer": "natural answer", "follow_up": "one short question", "actions": []}}"""


class HybridRetrievalEngine:
    """Answer free-form questions about a user's reminders.

    Args:
        reminder_store: ``store.ReminderStore``
        embedding_store: ``store.EmbeddingStore``
        embedder: Object with ``async embed(text) -> List[float]``
        resolver: ``temporal.TemporalResolver``
        completion_client: JSON completion client for semantic answers
        top_k: Maximum similarity results
        threshold: Minimum cosine similarity
    """

    def __init__(self,
                 reminder_store,
                 embedding_store,
                 embedder,
                 resolver: Optional[TemporalResolver] = None,
                 completion_client=None,
                 top_k: Optional[int] = None,
                 threshold: Optional[float] = None):
        self.reminder_store = reminder_store
        self.embedding_store = embedding_store
        self.embedder = embedder
        self.completion_client = completion_client
        self.resolver = resolver or TemporalResolver(completion_client)
        self.top_k = top_k or settings.SEARCH_TOP_K
        self.threshold = settings.SEARCH_MIN_SIMILARITY if threshold is None else threshold

    async def _date_rows(self, owner_id: str, window: DateRange) -> List[EvidenceItem]:
        if not window.has_date:
            return []
        rows = await self.reminder_store.list_by_date_range(owner_id, window.start, window.end)
        return [_as_evidence(r) for r in rows]

    async def _similar_rows(self, owner_id: str, query: str) -> List[EvidenceItem]:
        if not query or not query.strip():
            return []
        vector = await self.embedder.embed(query)
        return await self.embedding_store.similarity_search(owner_id, vector, self.top_k, self.threshold)

    async def _semantic_answer(self, query: str, today: date, evidence: List[EvidenceItem]):
        if not evidence:
            return ("I couldn't find any reminders matching that.",
                    "Want me to create one for you?", [])
        if self.completion_client is None:
            titles = ', '.join(item.title for item in evidence)
            return f"Here's what I found: {titles}.", FALLBACK_FOLLOW_UP, []

        parsed = await self.completion_client.complete_json(_answer_prompt(today, evidence), query, max_tokens=500)
        if '_raw' in parsed:
            raw = parsed['_raw']
            return (raw if isinstance(raw, str) and raw.strip() else FALLBACK_ANSWER), FALLBACK_FOLLOW_UP, []

        answer = parsed.get('answer')
        follow_up = parsed.get('follow_up')
        actions = parsed.get('actions')
        if any(v is not None and not isinstance(v, str) for v in (answer, follow_up)):
            logger.warning(f"Answer JSON has non-text fields: answer={type(answer).__name__}, "
                           f"follow_up={type(follow_up).__name__}")
        return (answer if isinstance(answer, str) and answer.strip() else FALLBACK_ANSWER,
                follow_up if isinstance(follow_up, str) and follow_up.strip() else FALLBACK_FOLLOW_UP,
                [a for a in actions if isinstance(a, dict)] if isinstance(actions, list) else [])

    async def search(self,
                     query: str,
                     owner_id: str,
                     start_date: Optional[date] = None,
                     end_date: Optional[date] = None,
                     reference_date: Optional[date] = None) -> SearchResponse:
        """
        Run a hybrid search.

        Args:
            query: The user's question; may be empty when a range is given
            owner_id: User whose reminders are searched
            start_date: Explicit range start (overrides date extraction)
            end_date: Explicit range end, defaults to ``start_date``
            reference_date: The caller's "today"

        Returns:
            SearchResponse: answer, follow-up and the evidence behind them

        Raises:
            StoreUnavailableError, EmbeddingError, ProviderError,
            ProviderTimeoutError: fatal for the call
        """
        today = reference_date or default_reference_date()
        window = await self.resolver.resolve(query, today, start_date, end_date)
        logger.info(f"Search '{query}' for owner {owner_id}: range={window.start}..{window.end} ({window.source})")

        date_rows, similar_rows = await asyncio.gather(
            self._date_rows(owner_id, window),
            self._similar_rows(owner_id, query),
        )
        date_rows.sort(key=_evidence_sort_key)
        similar_rows.sort(key=_evidence_sort_key)

        actions = []
        if window.has_date:
            answer, follow_up = deterministic_answer(date_rows, window)
            logger.info(f"Deterministic answer from {len(date_rows)} dated reminder(s)")
        else:
            answer, follow_up, actions = await self._semantic_answer(query, today, similar_rows)
            logger.info(f"Semantic answer from {len(similar_rows)} similar reminder(s)")

        return SearchResponse(
            answer=answer,
            follow_up=follow_up,
            # a resolved date answers from its own rows, even when there are none
            evidence=date_rows if window.has_date else similar_rows,
            actions=actions,
            start_date=window.start,
            end_date=window.end if window.is_range else None
        )
