"""Configuration module for the conversational reminder core.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminders.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    # MCP Server Configuration
    MCP_HOST: str = "127.0.0.1"
    """MCP server host address"""

    MCP_PORT: int = 8006
    """MCP server port for SSE transport (separate from REST API)"""

    MCP_TRANSPORT: str = "sse"
    """MCP transport type: 'stdio' for local, 'sse' for network access"""

    # General Configuration
    TIMEZONE: str = "UTC"
    """Timezone used to compute "today" when the client does not send its date"""

    # Hosted model (Amazon Bedrock)
    AWS_REGION: str = "us-east-1"
    """Region for the Bedrock runtime client"""

    BEDROCK_AGENT_MODEL_ID: str = "us.amazon.nova-lite-v1:0"
    """Model that drives the tool-calling conversation"""

    BEDROCK_AGENT_MAX_TOKENS: int = 1024
    """Max tokens per agent model response"""

    BEDROCK_EMBED_MODEL_ID: str = "amazon.titan-embed-text-v2:0"
    """Embedding model for reminder content and queries"""

    EMBED_DIMENSION: int = 1024
    """Embedding vector length"""

    MODEL_TIMEOUT_SECONDS: float = 20.0
    """Upper bound for a single agent model call"""

    EMBED_TIMEOUT_SECONDS: float = 10.0
    """Upper bound for a single embedding call"""

    # JSON completion provider (OpenAI-compatible chat completions)
    COMPLETION_API_URL: str = "https://api.groq.com/openai/v1"
    """Base URL for temporal extraction and search answers"""

    COMPLETION_API_KEY: str = ""
    """Bearer token for the completion provider"""

    COMPLETION_MODEL: str = "llama-3.1-8b-instant"
    """Model used for JSON-constrained completions"""

    COMPLETION_TIMEOUT_SECONDS: float = 10.0
    """Upper bound for a single completion call"""

    STORE_TIMEOUT_SECONDS: float = 10.0
    """Upper bound on one database call (including the similarity scan) before the request fails"""

    # Agent loop
    AGENT_MAX_ITERATIONS: int = 5
    """Hard ceiling on model calls per conversation request"""

    # Retrieval
    SEARCH_TOP_K: int = 15
    """Maximum similarity matches considered per search"""

    SEARCH_MIN_SIMILARITY: float = 0.2
    """Similarity threshold below which matches are dropped"""

    # Embedding indexer worker
    INDEXER_ENABLED: bool = True
    """Enable/disable the background embedding indexer"""

    INDEXER_CHECK_INTERVAL: int = 5
    """Interval in seconds between outbox polls"""

    INDEXER_BATCH_SIZE: int = 50
    """Outbox events processed per poll"""

    INDEXER_MAX_ATTEMPTS: int = 3
    """Attempts before an outbox event is marked failed"""

    INDEXER_CLEANUP_EVERY: int = 60
    """Run the orphan cleanup pass every N polls"""

    # Logging Configuration
    LOG_DIR: str = "logs"
    """Directory for rotating log files, relative to the project root unless absolute"""

    LOG_LEVEL: str = "INFO"
    """Level applied to every project logger and its handlers"""

    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    """Rotate a log file once it reaches this size"""

    LOG_BACKUP_COUNT: int = 5
    """Rotated files kept per log"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )


# Global settings instance
settings = Settings()
