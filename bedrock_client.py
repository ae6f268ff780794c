"""
Amazon Bedrock clients: the tool-calling conversation model and the embedding model.

Both wrap the synchronous boto3 runtime client and expose awaitable calls with
a hard timeout. Calls are never retried here: a retried tool-calling exchange
could execute a mutation twice, and the indexer retries through its outbox.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError,
)

from config import settings
from errors import EmbeddingError, ProviderError, ProviderTimeoutError
from logger_config import setup_logger

logger = setup_logger(__name__, 'bedrock.log')

AUTH_ERROR_CODES = {
    'AccessDeniedException',
    'UnrecognizedClientException',
    'ExpiredTokenException',
    'InvalidSignatureException',
}


@dataclass
class ModelResponse:
    """One Converse API result: the assistant message and why generation stopped."""
    stop_reason: str
    message: Dict[str, Any]
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> List[Dict[str, Any]]:
        return self.message.get('content') or []

    def tool_uses(self) -> List[Dict[str, Any]]:
        return [block['toolUse'] for block in self.content if 'toolUse' in block]

    def text(self) -> str:
        return '\n'.join(block['text'] for block in self.content if 'text' in block)


def _runtime_client(region: str, timeout: float):
    return boto3.client(
        'bedrock-runtime',
        region_name=region,
        config=BotoConfig(
            connect_timeout=min(timeout, 10),
            read_timeout=timeout,
            retries={'max_attempts': 0}
        ))


def _translate_error(e: Exception, what: str) -> Exception:
    if isinstance(e, (ReadTimeoutError, ConnectTimeoutError)):
        return ProviderTimeoutError(f'{what} timed out: {e}')
    if isinstance(e, ClientError):
        code = e.response.get('Error', {}).get('Code', '')
        if code in AUTH_ERROR_CODES:
            return ProviderError(f'{what} rejected credentials ({code}): {e}', code='provider_auth_rejected')
        return ProviderError(f'{what} failed ({code}): {e}')
    return ProviderError(f'{what} failed: {e}')


class BedrockConverseClient:
    """Bedrock Converse API client with tool configuration."""

    def __init__(self,
                 model_id: Optional[str] = None,
                 region: Optional[str] = None,
                 max_tokens: Optional[int] = None,
                 timeout: Optional[float] = None,
                 client=None):
        """
        Initialize the conversation model client.

        Args:
            model_id: Bedrock model id, defaults to settings.BEDROCK_AGENT_MODEL_ID
            region: AWS region, defaults to settings.AWS_REGION
            max_tokens: Max tokens per response
            timeout: Seconds allowed per call
            client: Pre-built bedrock-runtime client (tests inject a stub)
        """
        self.model_id = model_id or settings.BEDROCK_AGENT_MODEL_ID
        self.max_tokens = max_tokens or settings.BEDROCK_AGENT_MAX_TOKENS
        self.timeout = timeout or settings.MODEL_TIMEOUT_SECONDS
        self.bedrock_runtime = client or _runtime_client(region or settings.AWS_REGION, self.timeout)

        logger.info(f'Initialized Bedrock Converse client with model: {self.model_id}')

    def _converse_sync(self, system_prompt: str, messages: List[Dict[str, Any]],
                       tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        request = {
            'modelId': self.model_id,
            'system': [{'text': system_prompt}],
            'messages': messages,
            'inferenceConfig': {'maxTokens': self.max_tokens, 'temperature': 0.0},
        }
        if tools:
            request['toolConfig'] = {'tools': tools}
        return self.bedrock_runtime.converse(**request)

    async def converse(self,
                       system_prompt: str,
                       messages: List[Dict[str, Any]],
                       tools: List[Dict[str, Any]]) -> ModelResponse:
        """
        Send the conversation and tool specs; return the assistant message.

        Raises:
            ProviderTimeoutError: If the call exceeds the timeout
            ProviderError: On any provider-side failure
        """
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._converse_sync, system_prompt, messages, tools),
                timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(f'Bedrock Converse exceeded {self.timeout}s')
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock Converse error: {e}')
            raise _translate_error(e, 'Bedrock Converse')

        message = (raw.get('output') or {}).get('message') or {'role': 'assistant', 'content': []}
        return ModelResponse(stop_reason=raw.get('stopReason', ''),
                             message=message,
                             usage=raw.get('usage') or {})


class BedrockEmbed:
    """Amazon Titan text embeddings through Bedrock."""

    def __init__(self,
                 model_id: Optional[str] = None,
                 region: Optional[str] = None,
                 dimension: Optional[int] = None,
                 timeout: Optional[float] = None,
                 client=None):
        self.model_id = model_id or settings.BEDROCK_EMBED_MODEL_ID
        self.output_embedding_length = dimension or settings.EMBED_DIMENSION
        self.timeout = timeout or settings.EMBED_TIMEOUT_SECONDS
        self.bedrock = client or _runtime_client(region or settings.AWS_REGION, self.timeout)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def embed_sync(self, text: str) -> List[float]:
        """
        Generate a normalized embedding for ``text``.

        Raises:
            EmbeddingError: If the response carries no embedding array
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for embedding')
            return [0.0] * self.output_embedding_length

        body = json.dumps({'inputText': text, 'dimensions': self.output_embedding_length, 'normalize': True})
        try:
            response = self.bedrock.invoke_model(body=body, modelId=self.model_id,
                                                 accept='application/json', contentType='application/json')
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock Embed error: {e}')
            raise _translate_error(e, 'Bedrock Embed')

        result = json.loads(response.get('body').read())
        embedding = result.get('embedding')
        if not isinstance(embedding, list):
            raise EmbeddingError(f'Invalid embedding response: {json.dumps(result)[:200]}')
        return embedding

    async def embed(self, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.embed_sync, text), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(f'Bedrock Embed exceeded {self.timeout}s')
