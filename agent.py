"""
Conversation driver: the bounded model/tool loop behind ``converse``.

Each iteration sends the whole conversation, the tool registry and the system
instructions to the model. A response carrying tool-use blocks has its
assistant turn appended verbatim; every requested tool runs and all of them are
answered in one user turn, in request order. Otherwise ``end_turn`` returns the
model's text and any other stop reason ends the request with a warning. A
draft in a batch ends the loop on the spot so the user can confirm before
anything else runs.
"""

import asyncio
import re
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from config import settings
from errors import InvalidConversationError, IterationExhaustedError, ReminderCoreError
from logger_config import setup_logger
from schemas import ConversationTurn, ConverseResponse, ToolCallLogEntry
from temporal import reference_date as resolve_reference_date
from tools import ToolContext, ToolName, dispatch, lookup, tool_specs

logger = setup_logger(__name__, 'agent.log')

DEFAULT_FINAL_TEXT = "Done!"
DRAFT_REFUSAL = "Not executed: a draft is awaiting the user's confirmation, so no other tool runs until they reply."

_THINKING = re.compile(r'<thinking>.*?(</thinking>|$)', re.DOTALL | re.IGNORECASE)


class AgentState(str, Enum):
    CALLING = "calling"
    TOOL_USE = "tool_use"
    DISPATCHING = "dispatching"
    END_TURN = "end_turn"
    EXHAUSTED = "exhausted"


def strip_thinking(text: str) -> str:
    """Remove ``<thinking>...</thinking>`` sections the model may emit."""
    return _THINKING.sub('', text or '').strip()


def build_system_prompt(today: date) -> str:
    tomorrow = today + timedelta(days=1)
    full_today = f"{today:%A}, {today:%B} {today.day}, {today.year} ({today.isoformat()})"
    return f"""You are a helpful reminders assistant. Today is {full_today}. Tomorrow is {tomorrow.isoformat()}.

When the user wants to add a reminder, use draft_reminder so they can review it first.
Use create_reminder only after the user has confirmed a draft.
When the user asks what reminders they have or looks for a reminder, use search_reminders.
When the user wants to change, reschedule or complete a reminder, search for it first, then use update_reminder.
When the user wants to remove a reminder, search for it first, then use delete_reminder.

RULES:
- Always calculate actual dates from relative references (e.g., "tomorrow" = {tomorrow.isoformat()}).
- Keep reminder titles concise (max 6 words).
- Convert times to 24-hour format (e.g., "7pm" = "19:00").
- Reminder IDs come only from search results. Never invent one.
- If the user asks for multiple things, handle each one with the appropriate tools.
- After performing actions, give a brief, friendly confirmation.
- If information is missing (e.g., no date), ask the user to clarify."""


def _as_blocks(content) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{'text': content}] if content.strip() else []
    return [block for block in content if block]


def normalize_history(turns: Sequence[ConversationTurn], query: str) -> List[Dict[str, Any]]:
    """Provider messages from prior turns plus the new utterance.

    Leading assistant turns are dropped, consecutive turns of the same role
    are merged and empty turns are skipped, so roles strictly alternate and
    the conversation opens with the user.
    """
    messages: List[Dict[str, Any]] = []
    for turn in list(turns) + [ConversationTurn(role='user', content=query)]:
        blocks = _as_blocks(turn.content)
        if not blocks:
            continue
        if not messages and turn.role == 'assistant':
            continue
        if messages and messages[-1]['role'] == turn.role:
            messages[-1]['content'].extend(blocks)
        else:
            messages.append({'role': turn.role, 'content': blocks})
    return messages


def validate_turn_pairing(messages: Sequence[Dict[str, Any]]) -> None:
    """Check that each assistant tool-use turn is answered by the next turn.

    The next turn must carry exactly one tool result per tool use, with the
    same ids in the same order, and tool results may appear nowhere else.

    Raises:
        InvalidConversationError: On any pairing violation
    """
    expected: Optional[List[str]] = None
    for index, message in enumerate(messages):
        content = message.get('content') or []
        uses = [b['toolUse'].get('toolUseId') for b in content if 'toolUse' in b]
        results = [b['toolResult'].get('toolUseId') for b in content if 'toolResult' in b]

        if message.get('role') == 'user':
            if results != (expected or []):
                raise InvalidConversationError(
                    f"Turn {index}: tool results {results} do not answer tool uses {expected or []}")
            if uses:
                raise InvalidConversationError(f"Turn {index}: user turn contains tool use blocks")
            expected = None
        else:
            if expected:
                raise InvalidConversationError(f"Turn {index}: tool uses {expected} were never answered")
            if results:
                raise InvalidConversationError(f"Turn {index}: assistant turn contains tool results")
            expected = uses or None

    if expected:
        raise InvalidConversationError(f"Tool uses {expected} were never answered")


def _result_block(tool_use_id: str, envelope: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'toolResult': {
            'toolUseId': tool_use_id,
            'content': [{'json': envelope}],
            'status': 'success' if envelope.get('success') else 'error',
        }
    }


def _draft_message(draft: Dict[str, Any]) -> str:
    when = draft.get('date', '')
    if draft.get('time'):
        when = f"{when} at {draft['time']}"
    message = f"Here's a draft: \"{draft.get('title', '')}\" on {when}."
    return message + " Want me to save it?"


class ConversationDriver:
    """Runs one ``converse`` request against the model provider.

    Args:
        provider: Object with ``async converse(system_prompt, messages, tools) -> ModelResponse``
        reminder_store: ``store.ReminderStore``
        retrieval: ``retrieval.HybridRetrievalEngine``
        max_iterations: Model calls allowed per request
    """

    def __init__(self, provider, reminder_store, retrieval, max_iterations: Optional[int] = None):
        self.provider = provider
        self.reminder_store = reminder_store
        self.retrieval = retrieval
        self.max_iterations = max_iterations or settings.AGENT_MAX_ITERATIONS

    async def _run_tool(self, tool_use: Dict[str, Any], ctx: ToolContext, refuse: bool) -> Dict[str, Any]:
        if refuse:
            logger.info(f"Refusing {tool_use.get('name')} alongside a draft")
            return {"success": False, "error": DRAFT_REFUSAL}
        return await dispatch(tool_use.get('name', ''), tool_use.get('input'), ctx)

    async def _run_batch(self, tool_uses: List[Dict[str, Any]], ctx: ToolContext) -> List[Any]:
        """Run one batch concurrently; each slot holds an envelope or the exception it raised.

        Every call settles before this returns, so nothing in the batch is
        still writing when the request fails. A batch holding a draft runs
        only its drafts; everything else is answered with a refusal.
        """
        names = [lookup(use.get('name', '')) for use in tool_uses]
        has_draft = ToolName.DRAFT_REMINDER in names
        # gather preserves argument order, so results line up with tool_uses
        return await asyncio.gather(*[
            self._run_tool(use, ctx, refuse=has_draft and name != ToolName.DRAFT_REMINDER)
            for use, name in zip(tool_uses, names)
        ], return_exceptions=True)

    def _transition(self, state: AgentState, iteration: int) -> AgentState:
        logger.debug(f"[Iteration {iteration}] -> {state.value}")
        return state

    async def converse(self,
                       query: str,
                       owner_id: str,
                       client_date: Optional[date] = None,
                       conversation_history: Optional[Sequence[ConversationTurn]] = None) -> ConverseResponse:
        """
        Drive the model until it answers, drafts, or runs out of iterations.

        Args:
            query: The user's utterance
            owner_id: User on whose behalf tools run
            client_date: The caller's local "today"
            conversation_history: Prior turns, oldest first

        Returns:
            ConverseResponse: Final message, the tool-call log and the iteration count

        Raises:
            InvalidConversationError: If the history breaks tool pairing
            IterationExhaustedError: If the loop hits its ceiling
            ReminderCoreError: Infrastructure failures and timeouts, carrying the
                tool calls that completed before the failure
        """
        today = resolve_reference_date(client_date)
        ctx = ToolContext(owner_id=owner_id, reference_date=today,
                          reminder_store=self.reminder_store, retrieval=self.retrieval)

        messages = normalize_history(conversation_history or [], query)
        validate_turn_pairing(messages)

        system_prompt = build_system_prompt(today)
        specs = tool_specs()
        tool_log: List[ToolCallLogEntry] = []

        logger.info(f"Converse for owner {owner_id}: '{query}' ({len(messages)} message(s))")

        for iteration in range(1, self.max_iterations + 1):
            self._transition(AgentState.CALLING, iteration)
            response = await self.provider.converse(system_prompt, messages, specs)
            logger.info(f"[Iteration {iteration}] Stop reason: {response.stop_reason}")

            tool_uses = response.tool_uses()
            if tool_uses:
                self._transition(AgentState.TOOL_USE, iteration)
                if response.stop_reason != 'tool_use':
                    logger.warning(f"Tool use blocks with stop reason '{response.stop_reason}'; dispatching them")
                messages.append(response.message)

                self._transition(AgentState.DISPATCHING, iteration)
                outcomes = await self._run_batch(tool_uses, ctx)

                failure = None
                draft = None
                for use, outcome in zip(tool_uses, outcomes):
                    if isinstance(outcome, BaseException):
                        failure = failure or outcome
                        continue
                    tool_log.append(ToolCallLogEntry(
                        tool_name=use.get('name', ''),
                        input=use.get('input') if isinstance(use.get('input'), dict) else {},
                        result=outcome,
                        iteration_index=iteration
                    ))
                    if outcome.get('is_draft') and draft is None:
                        draft = outcome['draft']

                if failure is not None:
                    logger.error(f"[Iteration {iteration}] Tool batch failed: {failure}; "
                                 f"{len(tool_log)} tool call(s) completed")
                    if isinstance(failure, ReminderCoreError):
                        failure.tool_calls = [entry.model_dump(mode='json') for entry in tool_log]
                    raise failure

                messages.append({
                    'role': 'user',
                    'content': [_result_block(use['toolUseId'], env) for use, env in zip(tool_uses, outcomes)],
                })

                if draft is not None:
                    logger.info(f"Draft produced on iteration {iteration}; ending turn for confirmation")
                    return ConverseResponse(message=_draft_message(draft), tool_calls=tool_log,
                                            iterations=iteration,
                                            state=self._transition(AgentState.END_TURN, iteration).value,
                                            draft=draft)
                continue

            state = self._transition(AgentState.END_TURN, iteration).value
            text = strip_thinking(response.text())
            if response.stop_reason == 'end_turn':
                logger.info(f"Final response after {iteration} iteration(s), {len(tool_log)} tool call(s)")
                return ConverseResponse(message=text or DEFAULT_FINAL_TEXT, tool_calls=tool_log,
                                        iterations=iteration, state=state)

            logger.warning(f"Unexpected stop reason: {response.stop_reason}")
            return ConverseResponse(
                message=text or "Something unexpected happened.",
                tool_calls=tool_log,
                iterations=iteration,
                state=state,
                warning=f"Model stopped with reason '{response.stop_reason}'"
            )

        logger.warning(f"Max iterations ({self.max_iterations}) reached for owner {owner_id}")
        raise IterationExhaustedError(
            f"No final answer after {self.max_iterations} iterations",
            tool_calls=[entry.model_dump(mode='json') for entry in tool_log],
            iterations=self.max_iterations,
            state=self._transition(AgentState.EXHAUSTED, self.max_iterations).value
        )
