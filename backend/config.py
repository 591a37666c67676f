from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from feed_watchdog.config import BASE_DELAY_MS, MAX_ATTEMPTS, STALE_TIMEOUT_MS, WatchdogConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    backend_url: str = "http://127.0.0.1:5000"
    feed_ids: list[str] = ["feed_1", "feed_2", "feed_3", "feed_4", "feed_5"]
    feeds_poll_interval: float = 3.0
    http_timeout: float = 10.0
    max_attempts: int = MAX_ATTEMPTS
    base_delay_ms: float = BASE_DELAY_MS
    stale_timeout_ms: float = STALE_TIMEOUT_MS
    decode_frames: bool = True

    model_config = SettingsConfigDict(
        env_prefix="FEEDWATCH_",
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def watchdog_config(self) -> WatchdogConfig:
        return WatchdogConfig(
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            stale_timeout_ms=self.stale_timeout_ms,
        )


settings = Settings()
