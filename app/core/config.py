from __future__ import annotations
from functools import cached_property
from pydantic_settings import BaseSettings
from pydantic import Field
import secrets

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    # QR token policy: 15 min validity, binding opt-in at issuance
    qr_secret: str | None = Field(default=None, alias="QR_SECRET")
    qr_ttl_seconds: int = Field(default=900, alias="QR_TTL_SECONDS")
    qr_bind_ip: bool = Field(default=False, alias="QR_BIND_IP")
    qr_bind_device: bool = Field(default=False, alias="QR_BIND_DEVICE")
    qr_single_use: bool = Field(default=True, alias="QR_SINGLE_USE")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=120, alias="RL_MAX_REQS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_events: str = Field("checkin.events", alias="NATS_SUBJECT_EVENTS")
    use_nats_for_events: bool = Field(default=False, alias="USE_NATS_FOR_EVENTS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    cors_origins: str = Field(
        "http://localhost:3000,http://127.0.0.1:3000", alias="CORS_ORIGINS"
    )

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

    @cached_property
    def qr_secret_effective(self) -> str:
        # dev fallback: stable for the life of the process only
        return self.qr_secret or secrets.token_urlsafe(48)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
