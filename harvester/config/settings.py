# harvester/config/settings.py
from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator
from typing import Annotated, List
import logging

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    # API Configuration
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    DEBUG: bool = False

    # External API Keys
    FIRECRAWL_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    PERPLEXITY_API_KEY: str = ""
    JINA_API_KEY: str = ""
    APIFY_API_KEY: str = ""

    # External endpoints
    FIRECRAWL_BASE_URL: str = "https://api.firecrawl.dev"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    PERPLEXITY_BASE_URL: str = "https://api.perplexity.ai"
    MARKDOWN_PROXY_URL: str = "https://r.jina.ai"
    APIFY_BASE_URL: str = "https://api.apify.com"

    # Classifier
    CLASSIFIER_MODEL: str = "gpt-4o-mini"
    CLASSIFIER_MAX_TOKENS: int = 2000
    CLASSIFIER_CHUNK_SIZE: int = 100
    BLOG_URL_CAP: int = 50
    NEWSLETTER_URL_CAP: int = 30

    # Fallback answer engine
    ANSWER_ENGINE_MODEL: str = "sonar-pro"
    ANSWER_ENGINE_TEMPERATURE: float = 0.2
    FALLBACK_PIECE_COUNT: int = 5
    POPULAR_POST_COUNT: int = 5

    # Discovery
    DISCOVERY_LIMIT: int = 100
    DISCOVERY_TIMEOUT: int = 45

    # Content caps (characters)
    BLOG_CONTENT_CAP: int = 10000
    NEWSLETTER_CONTENT_CAP: int = 15000
    SOCIAL_CONTENT_CAP: int = 5000

    # Fetch profiles
    BLOG_FETCH_PROFILE: str = "high_concurrency"
    NEWSLETTER_FETCH_PROFILE: str = "strict"
    HIGH_CONCURRENCY_BATCH_SIZE: int = 10
    HIGH_CONCURRENCY_DELAY: float = 0.0
    STRICT_BATCH_SIZE: int = 1
    STRICT_DELAY: float = 3.1
    FETCH_MAX_RETRIES: int = 3
    FETCH_BACKOFF_BASE: float = 1.0
    FETCH_BACKOFF_JITTER: float = 0.5

    # Timeouts (seconds)
    EXTRACTION_TIMEOUT: int = 30
    FALLBACK_SCRAPE_TIMEOUT: int = 45
    LLM_TIMEOUT: int = 30
    ACTOR_REQUEST_TIMEOUT: int = 30

    # Async actors
    TWITTER_ACTOR_ID: str = "kaitoeasyapi~twitter-x-data-tweet-scraper-pay-per-result-cheapest"
    LINKEDIN_ACTOR_ID: str = "apimaestro~linkedin-profile-posts"
    TWITTER_MAX_ITEMS: int = 200
    LINKEDIN_MAX_POSTS: int = 50
    TWITTER_TOP_N: int = 50
    LINKEDIN_TOP_N: int = 20
    JOB_POLL_INTERVAL: float = 2.0
    TWITTER_MAX_WAIT: int = 1800
    LINKEDIN_MAX_WAIT: int = 1800
    TWITTER_ESTIMATED_DURATION: int = 1200
    LINKEDIN_ESTIMATED_DURATION: int = 600

    # Cache / job store
    REDIS_URL: str = "redis://localhost:6379"
    JOB_TTL: int = 86400
    MEMORY_CACHE_SIZE: int = 1000

    # Security
    ALLOWED_ORIGINS: Annotated[List[str], NoDecode] = ["*"]

    # Monitoring
    LOG_LEVEL: str = "INFO"

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return v

    @field_validator("FETCH_BACKOFF_JITTER")
    @classmethod
    def check_jitter(cls, v):
        # jitter above 1.0 would let a later backoff undercut an earlier one
        if not 0.0 <= v <= 1.0:
            raise ValueError("FETCH_BACKOFF_JITTER must be between 0 and 1")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v):
        return str(v).upper()

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }

settings = Settings()
logger.debug(f"Settings loaded (blog profile={settings.BLOG_FETCH_PROFILE}, "
             f"newsletter profile={settings.NEWSLETTER_FETCH_PROFILE})")
