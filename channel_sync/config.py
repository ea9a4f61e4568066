from __future__ import annotations

from dataclasses import dataclass

from channel_sync.common import env_int, env_str

FALLBACK_BATCH_SIZE = 256
LEGACY_FALLBACK_BATCH_SIZE = 20
MODERATION_PREFIX = "loki/v1"


@dataclass(frozen=True, slots=True)
class Settings:
    fallback_batch_size: int = FALLBACK_BATCH_SIZE
    max_retries: int = 8
    retry_base_delay: float = 0.0
    moderation_prefix: str = MODERATION_PREFIX
    private_key: str | None = None
    display_name: str | None = None
    auth_token: str | None = None
    http_timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            fallback_batch_size=env_int(
                "CHANNEL_SYNC_FALLBACK_BATCH_SIZE", default=FALLBACK_BATCH_SIZE, min_value=1
            ),
            max_retries=env_int("CHANNEL_SYNC_MAX_RETRIES", default=8, min_value=0),
            retry_base_delay=env_int("CHANNEL_SYNC_RETRY_BASE_DELAY_MS", default=0, min_value=0)
            / 1000,
            moderation_prefix=env_str("CHANNEL_SYNC_MODERATION_PREFIX", default=MODERATION_PREFIX),
            private_key=env_str("CHANNEL_SYNC_PRIVATE_KEY", default="") or None,
            display_name=env_str("CHANNEL_SYNC_DISPLAY_NAME", default="") or None,
            auth_token=env_str("CHANNEL_SYNC_AUTH_TOKEN", default="") or None,
            http_timeout_seconds=env_int(
                "CHANNEL_SYNC_HTTP_TIMEOUT_SECONDS", default=30, min_value=1
            ),
        )
