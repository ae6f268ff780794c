"""Tests for the Bedrock and completion clients with stubbed transports."""

import io
import json
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from bedrock_client import BedrockConverseClient, BedrockEmbed
from completion_client import CompletionClient
from errors import EmbeddingError, ProviderError, ProviderTimeoutError


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "Converse")


class TestBedrockConverseClient:

    @pytest.mark.asyncio
    async def test_request_shape_and_response(self):
        runtime = MagicMock()
        runtime.converse.return_value = {
            "stopReason": "tool_use",
            "output": {"message": {"role": "assistant", "content": [
                {"text": "Let me check."},
                {"toolUse": {"toolUseId": "t1", "name": "search_reminders", "input": {"query": "today"}}},
            ]}},
            "usage": {"inputTokens": 10, "outputTokens": 5},
        }
        client = BedrockConverseClient(model_id="test-model", max_tokens=256, timeout=5, client=runtime)
        tools = [{"toolSpec": {"name": "search_reminders"}}]

        response = await client.converse("system", [{"role": "user", "content": [{"text": "hi"}]}], tools)

        kwargs = runtime.converse.call_args.kwargs
        assert kwargs["modelId"] == "test-model"
        assert kwargs["system"] == [{"text": "system"}]
        assert kwargs["inferenceConfig"]["maxTokens"] == 256
        assert kwargs["toolConfig"] == {"tools": tools}
        assert response.stop_reason == "tool_use"
        assert response.text() == "Let me check."
        assert response.tool_uses()[0]["toolUseId"] == "t1"

    @pytest.mark.asyncio
    async def test_auth_rejection_has_distinct_code(self):
        runtime = MagicMock()
        runtime.converse.side_effect = _client_error("AccessDeniedException")
        client = BedrockConverseClient(model_id="m", timeout=5, client=runtime)

        with pytest.raises(ProviderError) as exc_info:
            await client.converse("s", [], [])
        assert exc_info.value.code == "provider_auth_rejected"

    @pytest.mark.asyncio
    async def test_other_client_errors(self):
        runtime = MagicMock()
        runtime.converse.side_effect = _client_error("ThrottlingException")
        client = BedrockConverseClient(model_id="m", timeout=5, client=runtime)

        with pytest.raises(ProviderError) as exc_info:
            await client.converse("s", [], [])
        assert exc_info.value.code == "provider_error"

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        runtime = MagicMock()
        runtime.converse.side_effect = ReadTimeoutError(endpoint_url="https://bedrock")
        client = BedrockConverseClient(model_id="m", timeout=5, client=runtime)

        with pytest.raises(ProviderTimeoutError):
            await client.converse("s", [], [])


class TestBedrockEmbed:

    def test_embed_sync(self):
        runtime = MagicMock()
        runtime.invoke_model.return_value = {"body": io.BytesIO(json.dumps({"embedding": [0.1, 0.2]}).encode())}
        embed = BedrockEmbed(model_id="titan", dimension=2, timeout=5, client=runtime)

        assert embed.embed_sync("gym session") == [0.1, 0.2]
        body = json.loads(runtime.invoke_model.call_args.kwargs["body"])
        assert body == {"inputText": "gym session", "dimensions": 2, "normalize": True}

    def test_empty_text_returns_zero_vector(self):
        runtime = MagicMock()
        embed = BedrockEmbed(model_id="titan", dimension=3, timeout=5, client=runtime)
        assert embed.embed_sync("  ") == [0.0, 0.0, 0.0]
        runtime.invoke_model.assert_not_called()

    def test_missing_embedding_array(self):
        runtime = MagicMock()
        runtime.invoke_model.return_value = {"body": io.BytesIO(b'{"embedding": "oops"}')}
        embed = BedrockEmbed(model_id="titan", dimension=2, timeout=5, client=runtime)
        with pytest.raises(EmbeddingError):
            embed.embed_sync("x")


class TestCompletionClient:

    @pytest.mark.asyncio
    async def test_parses_json_content(self):
        def handler(request):
            payload = json.loads(request.content)
            assert payload["response_format"] == {"type": "json_object"}
            assert request.headers["Authorization"] == "Bearer key"
            return httpx.Response(200, json={"choices": [{"message": {"content": '{"startDate": "2025-06-12"}'}}]})

        client = CompletionClient("https://llm.test/v1", "key", "model", 5, transport=httpx.MockTransport(handler))

        assert await client.complete_json("system", "tomorrow") == {"startDate": "2025-06-12"}

    @pytest.mark.asyncio
    async def test_non_json_content(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]}))
        client = CompletionClient("https://llm.test/v1", "key", "model", 5, transport=transport)

        assert await client.complete_json("s", "q") == {"_raw": "not json"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [(401, "provider_auth_rejected"), (500, "provider_error")])
    async def test_error_status(self, status, code):
        transport = httpx.MockTransport(lambda request: httpx.Response(status, text="nope"))
        client = CompletionClient("https://llm.test/v1", "key", "model", 5, transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await client.complete_json("s", "q")
        assert exc_info.value.code == code

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        "<html>gateway</html>",
        "[1, 2]",
        '{"choices": {"0": {}}}',
        '{"choices": [{"message": {"content": ["a"]}}]}',
    ])
    async def test_malformed_envelope_is_provider_error(self, body):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=body))
        client = CompletionClient("https://llm.test/v1", "key", "model", 5, transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await client.complete_json("s", "q")
        assert exc_info.value.code == "provider_error"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = CompletionClient("https://llm.test/v1", "key", "model", 5, transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderTimeoutError):
            await client.complete_json("s", "q")
