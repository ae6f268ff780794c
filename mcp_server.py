"""MCP Server for the reminder core.

Exposes the agent tool registry and the full ``converse`` loop to external AI
agents. Tools run through the same dispatcher the conversation driver uses, so
contracts, ownership scoping and result envelopes are identical.

Transport Support:
- stdio: Standard input/output (local process communication)
- sse: Server-Sent Events over HTTP (network access, scalable)
"""

import json
import os
from datetime import date
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

import services
from config import settings
from errors import ReminderCoreError
from logger_config import setup_logger
from temporal import reference_date
from tools import ToolContext, ToolName, dispatch

logger = setup_logger(__name__, 'mcp.log')
logger.info("MCP Server initialized")

mcp = FastMCP(
    "ReminderCore",
    host=settings.MCP_HOST,
    port=settings.MCP_PORT
)


def _context(owner_id: str) -> ToolContext:
    return ToolContext(
        owner_id=owner_id,
        reference_date=reference_date(),
        reminder_store=services.get_reminder_store(),
        retrieval=services.get_retrieval_engine()
    )


async def _run(name: ToolName, owner_id: str, arguments: Dict[str, Any]) -> str:
    """Dispatch a tool and render its envelope as JSON text."""
    arguments = {key: value for key, value in arguments.items() if value is not None}
    logger.info(f"MCP {name.value} for {owner_id}: {arguments}")
    try:
        result = await dispatch(name.value, arguments, _context(owner_id))
    except ReminderCoreError as e:
        logger.error(f"MCP {name.value} failed with {e.code}: {e}")
        result = {"success": False, **e.to_dict()}
    return json.dumps(result, default=str)


@mcp.tool()
async def draft_reminder(
    owner_id: str,
    title: str,
    date: str,
    time: Optional[str] = None,
    repeat: Optional[str] = None,
    tag_name: Optional[str] = None,
    priority_name: Optional[str] = None,
    notes: Optional[str] = None
) -> str:
    """Prepare a reminder for the user to confirm. Nothing is saved.

    Args:
        owner_id: User the reminder is for
        title: Brief reminder title
        date: Date in YYYY-MM-DD format
        time: Optional time in HH:mm 24-hour format
        repeat: none, daily, weekly, monthly or yearly
        tag_name: Optional tag name
        priority_name: Optional priority name
        notes: Optional extra details

    Returns:
        JSON envelope with the draft fields and ``is_draft: true``
    """
    return await _run(ToolName.DRAFT_REMINDER, owner_id, {
        "title": title, "date": date, "time": time, "repeat": repeat,
        "tag_name": tag_name, "priority_name": priority_name, "notes": notes,
    })


@mcp.tool()
async def create_reminder(
    owner_id: str,
    title: str,
    date: str,
    time: Optional[str] = None,
    repeat: str = "none",
    repeat_until: Optional[str] = None,
    tag_name: Optional[str] = None,
    priority_name: Optional[str] = None,
    notes: Optional[str] = None
) -> str:
    """Save a new reminder.

    Args:
        owner_id: User the reminder is for
        title: Brief reminder title
        date: Date in YYYY-MM-DD format
        time: Optional time in HH:mm 24-hour format
        repeat: none, daily, weekly, monthly or yearly (default: none)
        repeat_until: Optional last date of recurrence (YYYY-MM-DD)
        tag_name: Optional tag name, resolved case-insensitively
        priority_name: Optional priority name, resolved case-insensitively
        notes: Optional extra details

    Returns:
        JSON envelope with the saved reminder and any resolution warnings
    """
    return await _run(ToolName.CREATE_REMINDER, owner_id, {
        "title": title, "date": date, "time": time, "repeat": repeat, "repeat_until": repeat_until,
        "tag_name": tag_name, "priority_name": priority_name, "notes": notes,
    })


@mcp.tool()
async def search_reminders(
    owner_id: str,
    query: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None
) -> str:
    """Find reminders by topic, date or date range.

    Args:
        owner_id: User whose reminders are searched
        query: Natural language search, e.g. "what's tomorrow", "gym"
        start_date: Optional first day (YYYY-MM-DD)
        end_date: Optional last day (YYYY-MM-DD)

    Returns:
        JSON envelope with answer, follow-up and evidence
    """
    return await _run(ToolName.SEARCH_REMINDERS, owner_id, {
        "query": query, "start_date": start_date, "end_date": end_date,
    })


@mcp.tool()
async def update_reminder(
    owner_id: str,
    reminder_id: str,
    title: Optional[str] = None,
    date: Optional[str] = None,
    time: Optional[str] = None,
    completed: Optional[bool] = None,
    notes: Optional[str] = None,
    tag_name: Optional[str] = None,
    priority_name: Optional[str] = None
) -> str:
    """Change, reschedule or complete a reminder.

    Args:
        owner_id: Owning user
        reminder_id: Reminder UUID from a search result
        title: Optional new title
        date: Optional new date (YYYY-MM-DD)
        time: Optional new time (HH:mm)
        completed: Optional completion flag
        notes: Optional replacement notes
        tag_name: Optional new tag name
        priority_name: Optional new priority name

    Returns:
        JSON envelope with the updated reminder, or an error when not found
    """
    return await _run(ToolName.UPDATE_REMINDER, owner_id, {
        "reminder_id": reminder_id, "title": title, "date": date, "time": time,
        "completed": completed, "notes": notes, "tag_name": tag_name, "priority_name": priority_name,
    })


@mcp.tool()
async def delete_reminder(owner_id: str, reminder_id: str) -> str:
    """Permanently delete a reminder.

    Args:
        owner_id: Owning user
        reminder_id: Reminder UUID from a search result

    Returns:
        JSON envelope confirming deletion, or an error when not found
    """
    return await _run(ToolName.DELETE_REMINDER, owner_id, {"reminder_id": reminder_id})


@mcp.tool()
async def converse(owner_id: str, query: str, client_date: Optional[str] = None) -> str:
    """Run the reminder assistant on one utterance.

    Args:
        owner_id: User on whose behalf the assistant acts
        query: What the user said
        client_date: Optional local date of the user (YYYY-MM-DD)

    Returns:
        JSON with the assistant message, tool-call log and iteration count
    """
    driver = services.get_conversation_driver()
    try:
        response = await driver.converse(
            query,
            owner_id,
            client_date=date.fromisoformat(client_date) if client_date else None
        )
    except ReminderCoreError as e:
        logger.error(f"MCP converse failed with {e.code}: {e}")
        return json.dumps(e.to_dict(), default=str)
    return response.model_dump_json()


if __name__ == "__main__":
    transport = os.getenv("MCP_TRANSPORT", settings.MCP_TRANSPORT).lower()

    if transport == "sse":
        host = settings.MCP_HOST
        port = settings.MCP_PORT

        print(f"Starting MCP server with SSE transport on {host}:{port}")
        print(f"SSE endpoint: http://{host}:{port}/sse")

        mcp.run(transport="sse")
    else:
        print("Starting MCP server with stdio transport")
        mcp.run(transport="stdio")
