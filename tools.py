"""
Agent tools: the closed set of operations the conversation model may invoke.

Every tool has a typed pydantic input contract and one handler, registered in
``TOOL_REGISTRY``. Handlers return a JSON-serialisable envelope
(``{"success": True, ...}`` or ``{"success": False, "error": ...}``) that is fed
back to the model. Validation problems and missing reminders are envelope
errors; infrastructure failures raise ``ReminderCoreError`` subclasses and end
the request.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Type

from pydantic import BaseModel, ValidationError

from logger_config import setup_logger
from schemas import (
    CreateReminderInput, DeleteReminderInput, DraftReminderInput,
    SearchRemindersInput, UpdateReminderInput,
)

logger = setup_logger(__name__, 'agent.log')


class ToolName(str, Enum):
    DRAFT_REMINDER = "draft_reminder"
    CREATE_REMINDER = "create_reminder"
    SEARCH_REMINDERS = "search_reminders"
    UPDATE_REMINDER = "update_reminder"
    DELETE_REMINDER = "delete_reminder"


@dataclass
class ToolContext:
    """Per-request state handed to every handler."""
    owner_id: str
    reference_date: date
    reminder_store: Any
    retrieval: Any


Handler = Callable[[BaseModel, ToolContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    input_model: Type[BaseModel]
    handler: Handler


def _format_validation_error(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = '.'.join(str(part) for part in err['loc'])
        problems.append(f"{location}: {err['msg']}" if location else err['msg'])
    return "Invalid input: " + "; ".join(problems)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _draft_reminder(params: DraftReminderInput, ctx: ToolContext) -> Dict[str, Any]:
    return {
        "success": True,
        "is_draft": True,
        "draft": params.model_dump(mode="json", exclude_none=True),
    }


async def _create_reminder(params: CreateReminderInput, ctx: ToolContext) -> Dict[str, Any]:
    fields = params.model_dump(exclude={"tag_name", "priority_name"})
    reminder, warnings = await ctx.reminder_store.insert(
        ctx.owner_id, fields, params.tag_name, params.priority_name
    )
    return {
        "success": True,
        "reminder": reminder.model_dump(mode="json"),
        "warnings": warnings,
    }


async def _search_reminders(params: SearchRemindersInput, ctx: ToolContext) -> Dict[str, Any]:
    result = await ctx.retrieval.search(
        params.query or "",
        ctx.owner_id,
        start_date=params.start_date,
        end_date=params.end_date,
        reference_date=ctx.reference_date,
    )
    return {"success": True, **result.model_dump(mode="json")}


async def _update_reminder(params: UpdateReminderInput, ctx: ToolContext) -> Dict[str, Any]:
    fields = params.model_dump(exclude_unset=True, exclude={"reminder_id", "tag_name", "priority_name"})
    updated = await ctx.reminder_store.update(
        ctx.owner_id, params.reminder_id, fields, params.tag_name, params.priority_name
    )
    if updated is None:
        return {"success": False, "error": "Reminder not found"}

    reminder, warnings = updated
    return {
        "success": True,
        "reminder": reminder.model_dump(mode="json"),
        "warnings": warnings,
    }


async def _delete_reminder(params: DeleteReminderInput, ctx: ToolContext) -> Dict[str, Any]:
    deleted = await ctx.reminder_store.delete(ctx.owner_id, params.reminder_id)
    if not deleted:
        return {"success": False, "error": "Reminder not found"}
    return {"success": True, "deleted_id": params.reminder_id}


TOOL_REGISTRY: Dict[ToolName, ToolSpec] = {
    ToolName.DRAFT_REMINDER: ToolSpec(
        ToolName.DRAFT_REMINDER,
        "Prepare a reminder for the user to review and confirm. Use this when the user "
        "wants to add a reminder. Nothing is saved.",
        DraftReminderInput,
        _draft_reminder,
    ),
    ToolName.CREATE_REMINDER: ToolSpec(
        ToolName.CREATE_REMINDER,
        "Save a new reminder. Only use when the user has explicitly confirmed the details.",
        CreateReminderInput,
        _create_reminder,
    ),
    ToolName.SEARCH_REMINDERS: ToolSpec(
        ToolName.SEARCH_REMINDERS,
        "Find existing reminders by topic, date or date range. Returns an answer and "
        "the matching reminders with their IDs.",
        SearchRemindersInput,
        _search_reminders,
    ),
    ToolName.UPDATE_REMINDER: ToolSpec(
        ToolName.UPDATE_REMINDER,
        "Change, reschedule or mark complete an existing reminder. Search first to get its ID.",
        UpdateReminderInput,
        _update_reminder,
    ),
    ToolName.DELETE_REMINDER: ToolSpec(
        ToolName.DELETE_REMINDER,
        "Permanently delete a reminder. Search first to get its ID.",
        DeleteReminderInput,
        _delete_reminder,
    ),
}

_missing = set(ToolName) - set(TOOL_REGISTRY)
if _missing:
    raise RuntimeError(f"Tools without a handler: {sorted(m.value for m in _missing)}")


def _simplify_schema(node: Any) -> Any:
    """Flatten pydantic's JSON schema into the subset tool specs accept."""
    if isinstance(node, list):
        return [_simplify_schema(n) for n in node]
    if not isinstance(node, dict):
        return node

    any_of = node.get('anyOf')
    if any_of:
        non_null = [option for option in any_of if option.get('type') != 'null']
        if len(non_null) == 1:
            merged = {**{k: v for k, v in node.items() if k != 'anyOf'}, **non_null[0]}
            return _simplify_schema(merged)

    return {
        key: _simplify_schema(value)
        for key, value in node.items()
        if key not in ('title', 'default')
    }


def input_schema(name: ToolName) -> Dict[str, Any]:
    return _simplify_schema(TOOL_REGISTRY[name].input_model.model_json_schema())


def tool_specs() -> List[Dict[str, Any]]:
    """Tool definitions in Bedrock Converse ``toolConfig`` form."""
    return [
        {
            "toolSpec": {
                "name": spec.name.value,
                "description": spec.description,
                "inputSchema": {"json": input_schema(spec.name)},
            }
        }
        for spec in TOOL_REGISTRY.values()
    ]


def lookup(name: str):
    """Map a model-supplied tool name onto ``ToolName``; None when unknown."""
    try:
        return ToolName(name)
    except ValueError:
        return None


async def dispatch(name: str, raw_input: Any, ctx: ToolContext) -> Dict[str, Any]:
    """
    Validate ``raw_input`` against the tool's contract and run its handler.

    Args:
        name: Tool name as emitted by the model
        raw_input: The model's input object
        ctx: Request context

    Returns:
        dict: Result envelope

    Raises:
        ReminderCoreError: Infrastructure failures from the stores or providers
    """
    tool = lookup(name)
    if tool is None:
        logger.warning(f"Model requested unknown tool: {name}")
        return {"success": False, "error": f"Unknown tool: {name}"}

    spec = TOOL_REGISTRY[tool]
    try:
        params = spec.input_model.model_validate(raw_input if raw_input is not None else {})
    except ValidationError as e:
        logger.info(f"Rejected {name} input: {e.error_count()} validation error(s)")
        return {"success": False, "error": _format_validation_error(e)}

    logger.info(f"Dispatching {name} for owner {ctx.owner_id}")
    return await spec.handler(params, ctx)
