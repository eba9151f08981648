"""
Configuration settings for Feed Service
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "7ftrends Feed Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Supabase (PostgREST endpoint of the hosted database)
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SCHEMA: str = "public"

    # Remote fetch timeouts (seconds)
    FETCH_TIMEOUT_SECONDS: float = 15.0
    CONNECT_TIMEOUT_SECONDS: float = 5.0

    # Feed composition
    PAGE_SIZE: int = 10
    FRIEND_RATIO: float = 0.67
    TRENDING_RATIO: float = 0.33
    TRENDING_WINDOW_HOURS: int = 24
    TRENDING_OVERFETCH_FACTOR: int = 2  # Candidates fetched per trending slot
    TRENDING_MAX_SCANS: int = 5  # Candidate windows scanned when exclusions thin the pool

    # Cache TTL (minutes)
    FEED_CACHE_TTL_MINUTES: float = 5
    WARDROBE_CACHE_TTL_MINUTES: float = 30
    DEFAULT_TTL_MINUTES: float = 30

    # Cache backend: "memory" or "redis"
    CACHE_BACKEND: str = "memory"
    CACHE_NAMESPACE: str = "7ftrends"

    # Redis (persistent cache backend)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 2
    REDIS_PASSWORD: str = ""
    REDIS_ENABLED: bool = True

    # Kafka (change-data-capture stream for realtime updates)
    KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
    KAFKA_ENABLED: bool = True
    KAFKA_CONSUMER_GROUP: str = "feed-service"

    # Kafka Topics - Consume
    KAFKA_TOPIC_POSTS_CHANGES: str = "realtime.public.posts"
    KAFKA_TOPIC_LIKES_CHANGES: str = "realtime.public.likes"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
