import os
from typing import List
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # ---------------------------
    # ✅ API Keys
    # ---------------------------
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

    # ---------------------------
    # ✅ LLM Configuration
    # ---------------------------
    GEMINI_MODEL: str = "gemini-1.5-pro"
    CLASSIFICATION_TEMPERATURE: float = 0.3
    CLASSIFICATION_MAX_TOKENS: int = 1024
    DRAFT_TEMPERATURE: float = 0.7
    DRAFT_MAX_TOKENS: int = 2048
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_MAX_RETRIES: int = 3

    # ---------------------------
    # ✅ Embedding Model Configuration
    # ---------------------------
    EMBEDDING_MODEL: str = "mixedbread-ai/mxbai-embed-large-v1"
    EMBEDDING_DIMENSION: int = 1024
    EMBEDDING_BATCH_SIZE: int = 8
    EMBEDDING_MAX_CHARS: int = 2000

    # ---------------------------
    # ✅ Vector Index Configuration
    # ---------------------------
    VECTOR_BACKEND: str = os.getenv("VECTOR_BACKEND", "memory")  # memory | elasticsearch
    ELASTICSEARCH_URL: str = os.getenv("ELASTICSEARCH_URL", "http://localhost:9200")
    ELASTICSEARCH_INDEX: str = os.getenv("ELASTICSEARCH_INDEX", "helpdesk_knowledge_base")

    # ---------------------------
    # ✅ Knowledge Retrieval
    # ---------------------------
    KNOWLEDGE_TOP_K: int = 3
    KNOWLEDGE_MIN_RELEVANCE: float = 0.70
    KNOWLEDGE_EXCERPT_CHARS: int = 200

    # ---------------------------
    # ✅ Classification & Routing
    # ---------------------------
    AUTO_ASSIGN_CONFIDENCE_THRESHOLD: float = 0.85
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 17
    TEAM_SUMMARY_TOP_AGENTS: int = 3

    HIGH_PRIORITY_KEYWORDS: list[str] = [
        "urgent", "asap", "immediately", "down", "outage",
        "data loss", "security", "breach", "lawyer", "legal"
    ]

    # ---------------------------
    # ✅ Draft Generation
    # ---------------------------
    DRAFT_HISTORY_FETCH: int = 10
    DRAFT_HISTORY_TURNS: int = 5
    DRAFT_MAX_WORDS: int = 200
    DRAFT_MAX_CHARS: int = 1500
    DRAFT_DEFAULT_MODEL_CONFIDENCE: float = 0.7
    DRAFT_TTL_HOURS: int = 24

    # ---------------------------
    # ✅ Queue Configuration
    # ---------------------------
    QUEUE_BACKEND: str = os.getenv("QUEUE_BACKEND", "memory")  # memory | redis
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_KEY_PREFIX: str = "helpdesk_ai"
    NOTIFICATION_CHANNEL: str = "helpdesk_ai:events"

    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 2.0
    JOB_MAX_RATE_LIMIT_REQUEUES: int = 10
    JOB_POLL_INTERVAL_SECONDS: float = 0.5

    CLASSIFICATION_CONCURRENCY: int = 5
    CLASSIFICATION_RATE_PER_SECOND: int = 10
    DRAFT_CONCURRENCY: int = 3
    DRAFT_RATE_PER_SECOND: int = 5

    # ---------------------------
    # ✅ Performance Metrics
    # ---------------------------
    MINUTES_SAVED_PER_DRAFT: float = 2.0
    AGENT_HOURLY_COST_EUR: float = 40.0

    # ---------------------------
    # ✅ Application Configuration
    # ---------------------------
    FASTAPI_HOST: str = "0.0.0.0"
    FASTAPI_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    AUTO_RELOAD: bool = True
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
