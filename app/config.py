from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional, List

class Settings(BaseSettings):
    # Database
    database_url: Optional[str] = Field(default=None, alias='DATABASE_URL')
    db_user: str = Field(default='postgres', alias='DB_USER')
    db_host: str = Field(default='localhost', alias='DB_HOST')
    db_password: str = Field(default='', alias='DB_PASSWORD')
    db_port: int = Field(default=5432, alias='DB_PORT')
    db_name: str = Field(default='property_invites', alias='DB_NAME')

    # Store backend: "postgres" in deployed environments, "memory" for local runs and tests
    invite_store_backend: str = Field(default='postgres', alias='INVITE_STORE_BACKEND')
    store_timeout_seconds: float = Field(default=3.0, alias='STORE_TIMEOUT_SECONDS')
    store_retry_attempts: int = Field(default=3, alias='STORE_RETRY_ATTEMPTS')
    store_retry_base_delay: float = Field(default=0.1, alias='STORE_RETRY_BASE_DELAY')

    # Invite tokens
    invite_token_pepper: Optional[str] = Field(default=None, alias='INVITE_TOKEN_PEPPER')
    invite_token_alphabet: str = Field(
        default='ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789',
        alias='INVITE_TOKEN_ALPHABET'
    )
    invite_token_length: int = Field(default=16, alias='INVITE_TOKEN_LENGTH')
    invite_fingerprint_digest: str = Field(default='sha256', alias='INVITE_FINGERPRINT_DIGEST')
    invite_default_expiry_days: int = Field(default=7, alias='INVITE_DEFAULT_EXPIRY_DAYS')
    invite_min_expiry_days: int = Field(default=1, alias='INVITE_MIN_EXPIRY_DAYS')
    invite_max_expiry_days: int = Field(default=365, alias='INVITE_MAX_EXPIRY_DAYS')
    invite_min_uses: int = Field(default=1, alias='INVITE_MIN_USES')
    invite_max_uses: int = Field(default=100, alias='INVITE_MAX_USES')
    invite_issue_retries: int = Field(default=5, alias='INVITE_ISSUE_RETRIES')
    invite_consume_attempts: int = Field(default=10, alias='INVITE_CONSUME_ATTEMPTS')
    invite_failure_floor_ms: float = Field(default=25.0, alias='INVITE_FAILURE_FLOOR_MS')
    invite_preview_chars: int = Field(default=2, alias='INVITE_PREVIEW_CHARS')

    # Abuse guard (attempts per window, per identity or IP)
    validate_rate_limit: int = Field(default=30, alias='VALIDATE_RATE_LIMIT')
    validate_rate_window_seconds: int = Field(default=60, alias='VALIDATE_RATE_WINDOW_SECONDS')
    accept_rate_limit: int = Field(default=20, alias='ACCEPT_RATE_LIMIT')
    accept_rate_window_seconds: int = Field(default=60, alias='ACCEPT_RATE_WINDOW_SECONDS')
    issue_rate_limit: int = Field(default=20, alias='ISSUE_RATE_LIMIT')
    issue_rate_window_seconds: int = Field(default=60, alias='ISSUE_RATE_WINDOW_SECONDS')
    rate_backoff_base_seconds: float = Field(default=5.0, alias='RATE_BACKOFF_BASE_SECONDS')
    rate_backoff_ceiling_seconds: float = Field(default=900.0, alias='RATE_BACKOFF_CEILING_SECONDS')
    rate_violation_reset_seconds: float = Field(default=1800.0, alias='RATE_VIOLATION_RESET_SECONDS')
    view_rate_limit: int = Field(default=30, alias='VIEW_RATE_LIMIT')
    view_rate_window_seconds: int = Field(default=60, alias='VIEW_RATE_WINDOW_SECONDS')
    # Reverse proxies in front of the app; X-Forwarded-For is ignored when 0
    trusted_proxy_count: int = Field(default=0, alias='TRUSTED_PROXY_COUNT')

    # Rollout
    rollout_feature_name: str = Field(default='tokenized_invites', alias='ROLLOUT_FEATURE_NAME')
    rollout_stages: str = Field(default='10,25,50,100', alias='ROLLOUT_STAGES')
    rollout_initial_percent: int = Field(default=0, alias='ROLLOUT_INITIAL_PERCENT')
    rollout_cache_ttl_seconds: float = Field(default=30.0, alias='ROLLOUT_CACHE_TTL_SECONDS')
    rollout_eval_interval_seconds: float = Field(default=300.0, alias='ROLLOUT_EVAL_INTERVAL_SECONDS')
    rollout_window_seconds: float = Field(default=3600.0, alias='ROLLOUT_WINDOW_SECONDS')
    rollout_min_events: int = Field(default=50, alias='ROLLOUT_MIN_EVENTS')
    rollout_min_stage_seconds: float = Field(default=1800.0, alias='ROLLOUT_MIN_STAGE_SECONDS')
    rollout_advance_min_conversion: float = Field(default=0.65, alias='ROLLOUT_ADVANCE_MIN_CONVERSION')
    rollout_advance_max_error_rate: float = Field(default=0.10, alias='ROLLOUT_ADVANCE_MAX_ERROR_RATE')
    rollout_rollback_min_conversion: float = Field(default=0.50, alias='ROLLOUT_ROLLBACK_MIN_CONVERSION')
    rollout_rollback_max_error_rate: float = Field(default=0.25, alias='ROLLOUT_ROLLBACK_MAX_ERROR_RATE')
    rollout_rollback_percent: int = Field(default=0, alias='ROLLOUT_ROLLBACK_PERCENT')
    rollout_auto_control: bool = Field(default=False, alias='ROLLOUT_AUTO_CONTROL')
    rollout_admin_key: Optional[str] = Field(default=None, alias='ROLLOUT_ADMIN_KEY')

    # App settings
    app_env: str = Field(default="development", alias='APP_ENV')
    frontend_url: str = Field(default="http://localhost:8081", alias='FRONTEND_URL')
    port: int = Field(default=8001, alias='FASTAPI_PORT')
    host: str = Field(default="0.0.0.0", alias='FASTAPI_HOST')
    debug: bool = Field(default=True, alias='DEBUG')
    cors_origins: str = Field(default="http://localhost:8081", alias='CORS_ORIGINS')

    # Discord webhook for operational alerts (rollbacks)
    discord_ops_webhook_url: Optional[str] = Field(default=None, alias='DISCORD_OPS_WEBHOOK_URL')

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def db_connection_params(self) -> dict:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "password": self.db_password,
            "database": self.db_name,
        }

    @property
    def rollout_stage_list(self) -> List[int]:
        stages = sorted({int(s) for s in self.rollout_stages.split(",") if s.strip()})
        return [s for s in stages if 0 < s <= 100]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

settings = Settings()
