import os
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_PATH = os.path.dirname(__file__)


class Settings(BaseSettings):
    DB_HOST: str = 'localhost'
    DB_PORT: int = 5432
    DB_USER: str = 'postgres'
    DB_PASS: str = 'postgres'
    DB_NAME: str = 'ai_studio'
    DATABASE_URL: str | None = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10

    PROJECT_NAME: str = 'AI Studio Orchestrator'
    DEBAG: bool = False
    LOG_LEVEL: str = 'INFO'

    SECRET_KEY: str = 'change-me'
    ALGORITHM: str = 'HS256'
    CRON_SECRET: str | None = None

    # dispatcher
    DISPATCH_MAX_CONCURRENCY: int = 3
    DISPATCH_ACTIVE_WINDOW_MS: int = 10 * 60 * 1000
    DISPATCH_STALE_MAX_MS: int = 60 * 60 * 1000
    DISPATCH_CLEANUP_INTERVAL_S: float = 60.0
    DISPATCH_CLEANUP_TIMEOUT_S: float = 5.0
    DISPATCH_WORKERS: int = 2
    DISPATCH_QUEUE_SIZE: int = 8

    # image synthesis provider
    WAVESPEED_API_BASE: str = 'https://api.wavespeed.ai'
    WAVESPEED_API_KEY: str = ''
    PROVIDER_TIMEOUT_S: float = 600.0
    PROVIDER_SIGN_TTL_S: int = 600
    PROVIDER_RETRY_DELAY_S: float = 1.0
    DEFAULT_GENERATION_MODEL: str = 'seedream-v4-edit'

    # vision LLM
    XAI_API_BASE: str = 'https://api.x.ai/v1'
    XAI_API_KEY: str = ''
    XAI_MODELS: list[str] = ['grok-4-fast-reasoning', 'grok-4', 'grok-2-vision-1212']
    PROMPT_LLM_TIMEOUT_S: float = 25 * 60.0

    # prompt queue
    PROMPT_QUEUE_INTERVAL_S: float = 5.0
    PROMPT_QUEUE_BATCH_SIZE: int = 3
    PROMPT_MAX_RETRIES: int = 3
    PROMPT_RETRY_BASE_DELAY_MS: int = 1000
    PROMPT_RETRY_NETWORK_BASE_DELAY_MS: int = 500
    PROMPT_RETRY_MAX_DELAY_MS: int = 30000
    PROMPT_RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # server-side polling
    POLLER_ENABLED: bool = True
    POLLER_WORKERS: int = 4
    POLLER_BASE_INTERVAL_S: float = 2.0
    POLLER_MAX_INTERVAL_S: float = 30.0

    # storage
    STORAGE_BACKEND: str = 'local'     # local | s3
    STORAGE_ROOT: str = './storage'
    PUBLIC_BASE_URL: str = 'http://localhost:8000'
    OUTPUTS_BUCKET: str = 'outputs'
    THUMBNAILS_BUCKET: str = 'thumbnails'
    THUMBNAIL_SIZE: int = 512
    S3_ENDPOINT: str | None = None
    S3_ACCESS_KEY: str = ''
    S3_SECRET_KEY: str = ''
    S3_REGION: str = 'us-east-1'

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore'
    )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f'postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}'


settings = Settings()
