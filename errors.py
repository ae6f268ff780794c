"""Error taxonomy for the reminder core.

Expected failures inside tools (bad id, unknown tag) never reach this module;
they travel back to the model as ``{"success": False, "error": ...}``.
Everything here is fatal for the current request and carries a ``code`` the
transport layer can hand to clients.
"""

from typing import Any, Dict, List, Optional


class ReminderCoreError(Exception):
    """Base class for request-fatal errors."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code
        # tool calls that completed in the failing request, set by the agent loop
        self.tool_calls: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.code, "detail": str(self), "retryable": self.retryable}
        if self.tool_calls is not None:
            data["tool_calls"] = self.tool_calls
        return data


class InfrastructureError(ReminderCoreError):
    """A backing service (database, provider) failed."""

    code = "infrastructure_error"
    retryable = True


class StoreUnavailableError(InfrastructureError):
    code = "store_unavailable"


class ProviderError(InfrastructureError):
    """Hosted model or completion provider rejected or failed the call."""

    code = "provider_error"


class EmbeddingError(InfrastructureError):
    code = "embedding_error"


class ProviderTimeoutError(InfrastructureError):
    """An external call exceeded its time budget. Never retried in-request."""

    code = "provider_timeout"


class InvalidConversationError(ReminderCoreError):
    """Client-supplied history breaks the tool-use/tool-result pairing."""

    code = "invalid_conversation_history"


class IterationExhaustedError(ReminderCoreError):
    """The agent loop hit its iteration ceiling without a final answer."""

    code = "iteration_exhausted"

    def __init__(self, message: str, tool_calls: List[Dict[str, Any]], iterations: int, state: str = "exhausted"):
        super().__init__(message)
        self.tool_calls = tool_calls
        self.iterations = iterations
        self.state = state

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["iterations"] = self.iterations
        data["state"] = self.state
        return data
