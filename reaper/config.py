"""Environment-based configuration using Pydantic Settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Service
    app_name: str = "Session Reaper"
    debug: bool = False

    # Redis (REDIS_PORT_6379_TCP_* are set by legacy container links)
    redis_host: str = Field(
        default="localhost",
        validation_alias=AliasChoices("REDIS_HOST", "REDIS_PORT_6379_TCP_ADDR"),
    )
    redis_port: int = Field(
        default=6379,
        validation_alias=AliasChoices("REDIS_PORT_NUMBER", "REDIS_PORT_6379_TCP_PORT"),
    )
    redis_db: int = 0
    redis_password: str | None = None
    redis_socket_timeout_seconds: float = 5.0

    # Keys written by the proxy: {prefix}:{session_id}:{port|cid|shadow}
    key_prefix: str = "s2c"
    configure_keyspace_events: bool = True

    # Docker
    docker_base_url: str | None = None  # None: DOCKER_HOST / local socket
    runtime_timeout_seconds: int = 30
    container_stop_timeout_seconds: int = 10

    # Retries for store and runtime calls
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 5.0

    # Expiration subscription
    subscribe_max_attempts: int = 10
    subscribe_backoff_base_seconds: float = 1.0
    subscribe_backoff_max_seconds: float = 30.0
    subscribe_poll_seconds: float = 1.0

    # Reclamation workers
    reclaim_workers: int = 8
    drain_timeout_seconds: float = 30.0

    # Reconciliation sweep; 0 disables the periodic run
    reconcile_interval_seconds: float = 300.0
    reconcile_grace_seconds: float = 60.0

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def expired_channel(self) -> str:
        return f"__keyevent@{self.redis_db}__:expired"


settings = Settings()
