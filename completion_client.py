"""JSON-constrained chat completions over an OpenAI-compatible HTTP API.

Used for the two narrow model calls outside the agent loop: date extraction
for the temporal resolver and the evidence-grounded answer for semantic
searches. Both ask for ``response_format: json_object``.
"""

import json
from typing import Any, Dict, Optional

import httpx

from config import settings
from errors import ProviderError, ProviderTimeoutError
from logger_config import setup_logger

logger = setup_logger(__name__, 'completion.log')


class CompletionClient:
    """Minimal async client for ``/chat/completions`` returning parsed JSON."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.COMPLETION_API_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.COMPLETION_API_KEY
        self.model = model or settings.COMPLETION_MODEL
        self.timeout = timeout or settings.COMPLETION_TIMEOUT_SECONDS
        self._transport = transport

    async def complete_json(self, system_prompt: str, user_message: str, max_tokens: int = 300) -> Dict[str, Any]:
        """Run one completion and parse its content as a JSON object.

        Args:
            system_prompt: Instructions constraining the output shape
            user_message: The user's query
            max_tokens: Output budget

        Returns:
            dict: Parsed object. Content that is not a JSON object comes back as
            ``{"_raw": <text>}`` so callers can decide how to degrade.

        Raises:
            ProviderTimeoutError: If the request exceeds the timeout
            ProviderError: On transport failures, non-2xx responses or a malformed
                response envelope
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": 0,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"Completion request timed out after {self.timeout}s")
            raise ProviderTimeoutError(f"Completion provider exceeded {self.timeout}s")
        except httpx.RequestError as e:
            logger.error(f"Network error calling completion provider: {str(e)}")
            raise ProviderError(f"Completion provider unreachable: {e}")

        if response.status_code in (401, 403):
            raise ProviderError(f"Completion provider rejected credentials: {response.text[:200]}",
                                code="provider_auth_rejected")
        if response.status_code != 200:
            logger.error(f"Completion provider error. Status: {response.status_code}, Response: {response.text[:500]}")
            raise ProviderError(f"Completion provider returned {response.status_code}")

        try:
            data = response.json()
            content = ((data.get("choices") or [{}])[0].get("message") or {}).get("content") or "{}"
        except (ValueError, AttributeError, IndexError, KeyError, TypeError) as e:
            logger.error(f"Malformed completion response envelope: {response.text[:500]}")
            raise ProviderError(f"Completion provider returned a malformed response: {e}")
        if not isinstance(content, str):
            raise ProviderError(f"Completion content is {type(content).__name__}, not text")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Completion content is not JSON: {content[:200]}")
            return {"_raw": content}
        if not isinstance(parsed, dict):
            return {"_raw": content}
        return parsed
