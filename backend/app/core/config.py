from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Post Scheduler"

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "post_scheduler"
    postgres_user: str = "post_scheduler"
    postgres_password: str = "post_scheduler"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_socket_timeout_seconds: float = 2.0

    database_url: str | None = None
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None

    twitter_client_id: str | None = None
    twitter_client_secret: str | None = None

    default_max_retries: int = 3
    retry_base_delay_minutes: int = 5
    publish_lease_seconds: int = 300
    dispatcher_max_concurrency: int = 5
    adapter_timeout_seconds: float = 20.0
    platform_rate_limit_per_minute: int = 120
    token_refresh_window_hours: int = 12
    metrics_lookback_days: int = 7
    metrics_redis_mirror_enabled: bool = True

    dispatch_interval_seconds: float = 60.0
    metrics_collection_interval_seconds: float = 600.0
    token_refresh_interval_seconds: float = 3600.0

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
