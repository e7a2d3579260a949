from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, computed_field
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Meeting Webhook Pipeline"
    ENV: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    DB_CONNECTION: str = "postgresql+asyncpg"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_DATABASE: str = "meetings_db"
    DB_USERNAME: str = "meetings"
    DB_PASSWORD: str = "meetings_secret"

    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_TIMEOUT: int = 30

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        return f"{self.DB_CONNECTION}://{self.DB_USERNAME}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_DATABASE}"

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT: float = 5.0
    REDIS_SOCKET_CONNECT_TIMEOUT: float = 5.0

    # Tencent Meeting: webhook token + EncodingAESKey from the app console
    TENCENT_WEBHOOK_TOKEN: str = "__MISSING__"
    TENCENT_ENCODING_AES_KEY: str = "__MISSING__"
    TENCENT_SECRET_ID: str = "__MISSING__"
    TENCENT_SECRET_KEY: str = "__MISSING__"
    TENCENT_APP_ID: str = ""
    TENCENT_SDK_ID: str = ""
    TENCENT_API_BASE_URL: str = "https://api.meeting.qq.com"
    TENCENT_OPERATOR_USERID: Optional[str] = None  # falls back to the meeting creator
    TENCENT_TRANSCRIPT_PAGE_SIZE: int = 100

    LARK_APP_ID: str = "__MISSING__"
    LARK_APP_SECRET: str = "__MISSING__"
    LARK_ENCRYPT_KEY: Optional[str] = None  # platform-side encryption is optional
    LARK_VERIFICATION_TOKEN: Optional[str] = None
    LARK_DOMAIN: str = "feishu"  # "feishu" or "lark"

    @computed_field
    @property
    def LARK_API_BASE_URL(self) -> str:
        """Open platform host for the configured Lark domain."""
        if self.LARK_DOMAIN == "lark":
            return "https://open.larksuite.com"
        return "https://open.feishu.cn"

    QUEUE_NAME: str = "meeting-events"
    QUEUE_WORKER_ENABLED: bool = True
    QUEUE_CONCURRENCY: int = 4
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    QUEUE_IDEMPOTENCY_TTL_SECONDS: int = 86400
    QUEUE_INFLIGHT_TTL_SECONDS: int = 900
    QUEUE_LOCK_RETRY_DELAY_SECONDS: float = 15.0
    QUEUE_STALLED_AFTER_SECONDS: int = 900
    QUEUE_LEASE_RENEW_INTERVAL_SECONDS: float = 60.0

    RECORDING_POLL_MAX_ATTEMPTS: int = 24
    RECORDING_POLL_DELAY_SECONDS: float = 10.0
    TRANSCRIPT_FETCH_DELAY_SECONDS: int = 180   # provider-side indexing lag

    MEETING_CACHE_TTL_SECONDS: int = 86400

    HTTP_CONNECT_TIMEOUT: float = 5.0
    HTTP_READ_TIMEOUT: float = 30.0

    @field_validator("TENCENT_WEBHOOK_TOKEN", "TENCENT_ENCODING_AES_KEY")
    @classmethod
    def validate_tencent_webhook_secret(cls, v: str) -> str:
        if not v or v == "__MISSING__":
            import os
            if os.getenv("ENV", "development") != "development":
                raise ValueError("Tencent webhook token and EncodingAESKey are required outside development")
            return "__MISSING__"
        return v


settings = Settings()
