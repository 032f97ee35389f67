from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"
    SERVICE_NAME: str = "research_engine"

    # database & redis
    # Plain strings so sqlite:// and redis:// URLs are always accepted
    DATABASE_URL: str = "sqlite:///./research_engine.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # cors
    FRONTEND_ORIGIN: str | None = None
    CORS_ALLOW_ALL_ORIGINS: bool = False

    # llm backends (keys come from the per-user credential store)
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    GEMINI_DEFAULT_MODEL: str = "gemini-2.0-flash"
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_DEFAULT_MODEL: str = "llama-3.3-70b-versatile"
    GROQ_TEMPERATURE: float = 0.7
    GROQ_MAX_TOKENS: int = 4096
    LLM_TIMEOUT_SECONDS: int = 120
    # Rate-limit backoff: attempts in total, base * 2**attempt, never below the minimum
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_SECONDS: float = 2.0
    LLM_RETRY_MIN_SECONDS: float = 1.0

    # deep-research delegate
    DEEP_RESEARCH_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    DEEP_RESEARCH_AGENT: str = "deep-research-pro-preview-12-2025"
    DEEP_RESEARCH_POLL_INTERVAL_SECONDS: int = 30
    DEEP_RESEARCH_MAX_POLLS: int = 40

    # providers
    REDDIT_BASE_URL: str = "https://www.reddit.com"
    REDDIT_USER_AGENT: str = "research-engine/0.1 (discovery bot)"
    REDDIT_MIN_SCORE: int = 10
    REDDIT_MIN_REQUEST_INTERVAL_SECONDS: float = 2.0
    REDDIT_TIMEOUT_SECONDS: int = 30
    HN_SEARCH_URL: str = "https://hn.algolia.com/api/v1/search"
    HN_ITEM_URL: str = "https://hn.algolia.com/api/v1/items"
    HN_MIN_POINTS: int = 20
    HN_TIMEOUT_SECONDS: int = 20
    SERPER_SEARCH_URL: str = "https://google.serper.dev/search"
    SERPER_COUNTRY: str = "za"
    SERPER_LANGUAGE: str = "en"
    SERPER_TIMEOUT_SECONDS: int = 30
    SEARCH_CACHE_TTL_SECONDS: int = 60 * 60 * 24

    # content extraction
    EXTRACTION_TIMEOUT_SECONDS: int = 30
    EXTRACTION_DELAY_SECONDS: float = 1.0
    EXTRACTION_MIN_CONTENT_CHARS: int = 200
    JINA_READER_URL: str = "https://r.jina.ai"

    # retrieval cache
    QUERY_CACHE_TTL_HOURS: int = 24
    EXTRACTION_CACHE_TTL_DAYS: int = 7

    # pipeline
    GAP_LOOP_MAX_ITERATIONS: int = 2
    ANALYZER_PASS_DELAYS_SECONDS: list[float] = [15.0, 15.0, 15.0, 5.0]
    VALIDATOR_CALL_DELAY_SECONDS: float = 3.0
    STEP_MAX_ATTEMPTS: int = 3

    # data retention (in days)
    CHECKPOINT_RETENTION_DAYS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
