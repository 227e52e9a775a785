"""
Research Core Settings Configuration
Environment-driven configuration for the research orchestration core
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class ResearchSettings(BaseSettings):
    """Configuration settings for the research orchestration core"""

    environment: str = "development"
    debug: bool = False

    # Generation backends
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RESEARCH_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RESEARCH_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    cohere_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RESEARCH_COHERE_API_KEY", "COHERE_API_KEY"),
    )
    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "RESEARCH_GEMINI_API_KEY", "GOOGLE_GEMINI_API_KEY", "GOOGLE_API_KEY"
        ),
    )
    groq_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RESEARCH_GROQ_API_KEY", "GROQ_API_KEY"),
    )

    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3-5-haiku-latest"
    cohere_model: str = "command-r"
    gemini_model: str = "gemini-1.5-flash"
    groq_model: str = "llama-3.1-8b-instant"

    ollama_host: Optional[str] = None
    ollama_port: int = 11434
    ollama_model: str = "llama3.1:8b"

    default_llm_provider: str = "gemini"
    llm_provider_order: List[str] = []
    llm_request_timeout: float = 30.0
    llm_max_retries: int = 3
    llm_retry_delay: float = 1.0
    llm_max_tokens: int = 2000
    llm_temperature: float = 0.7

    # Circuit breakers
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 120.0

    # Workers
    worker_timeout: float = 60.0
    worker_max_attempts: int = 3
    worker_retry_delay: float = 1.0
    dependency_timeout: Optional[float] = 300.0

    # Retrieval
    embedding_provider: str = "gemini"  # gemini, openai, ollama, or hash
    embedding_model: Optional[str] = None
    embedding_dimensions: int = 1536
    embedding_timeout: float = 30.0
    vector_index_timeout: float = 30.0
    qdrant_url: Optional[str] = None
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "account_research"
    document_cache_capacity: int = 500
    search_cache_capacity: int = 100
    rag_top_k: int = 5
    rag_max_context_tokens: int = 4000

    # Session memory
    redis_url: Optional[str] = None
    short_term_ttl: int = 3600  # 1 hour
    long_term_ttl: int = 2592000  # 30 days
    max_conversation_length: int = 50
    enable_semantic_memory: bool = True

    # Tools
    searxng_url: str = "http://localhost:8888"
    tool_timeout: float = 30.0
    tool_max_concurrency: int = 5
    tool_history_limit: int = 1000

    # Logging
    log_level: str = "INFO"
    log_path: str = "./logs"
    structured_logging: bool = True

    @property
    def ollama_base_url(self) -> Optional[str]:
        """Construct Ollama base URL, or None when Ollama is not configured"""
        if not self.ollama_host:
            return None
        if self.ollama_host.startswith("http"):
            return f"{self.ollama_host}:{self.ollama_port}"
        return f"http://{self.ollama_host}:{self.ollama_port}"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept log levels in any case"""
        return v.upper()

    @field_validator("default_llm_provider", "embedding_provider")
    @classmethod
    def normalize_provider(cls, v):
        return v.strip().lower()

    def ensure_log_path(self) -> Path:
        """Create the log directory if needed and return it"""
        path = Path(self.log_path)
        path.mkdir(parents=True, exist_ok=True)
        return path

    model_config = {
        "env_file": ".env",
        "env_prefix": "RESEARCH_",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }


# Global settings instance
settings = ResearchSettings()


def get_settings() -> ResearchSettings:
    """Get application settings"""
    return settings
