"""Process-wide collaborators shared by the API, MCP server and worker.

Each getter builds its object once per process. The API exposes the top-level
ones as FastAPI dependencies, so tests swap them with ``dependency_overrides``.
"""

from functools import lru_cache

from agent import ConversationDriver
from bedrock_client import BedrockConverseClient, BedrockEmbed
from completion_client import CompletionClient
from config import settings
from indexer import EmbeddingIndexer
from retrieval import HybridRetrievalEngine
from store import EmbeddingStore, ReminderStore
from temporal import TemporalResolver


@lru_cache()
def get_reminder_store() -> ReminderStore:
    return ReminderStore()


@lru_cache()
def get_embedding_store() -> EmbeddingStore:
    return EmbeddingStore()


@lru_cache()
def get_embedder() -> BedrockEmbed:
    return BedrockEmbed()


@lru_cache()
def get_completion_client() -> CompletionClient:
    return CompletionClient()


@lru_cache()
def get_retrieval_engine() -> HybridRetrievalEngine:
    completion = get_completion_client()
    return HybridRetrievalEngine(
        reminder_store=get_reminder_store(),
        embedding_store=get_embedding_store(),
        embedder=get_embedder(),
        resolver=TemporalResolver(completion),
        completion_client=completion,
        top_k=settings.SEARCH_TOP_K,
        threshold=settings.SEARCH_MIN_SIMILARITY
    )


@lru_cache()
def get_conversation_driver() -> ConversationDriver:
    return ConversationDriver(
        provider=BedrockConverseClient(),
        reminder_store=get_reminder_store(),
        retrieval=get_retrieval_engine(),
        max_iterations=settings.AGENT_MAX_ITERATIONS
    )


@lru_cache()
def get_indexer() -> EmbeddingIndexer:
    return EmbeddingIndexer(get_embedding_store(), get_embedder(), settings.INDEXER_MAX_ATTEMPTS)
