from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "dev"
    APP_NAME: str = "chatblast"
    LOG_LEVEL: str = "INFO"

    API_KEY: str = "CHANGE_ME"

    DB_HOST: str = "postgres"
    DB_PORT: int = 5432
    DB_NAME: str = "chatblast"
    DB_USER: str = "chatblast"
    DB_PASSWORD: str = "chatblast"
    # полный URL перекрывает DB_* (например sqlite+aiosqlite:// для локальных прогонов)
    DATABASE_URL: str = ""

    # очередь рассылок
    JOB_POLL_INTERVAL_SEC: float = 5.0
    JOB_DEFAULT_DELAY_SEC: float = 3.0
    JOB_MAX_DELAY_SEC: float = 300.0
    JOB_MAX_RECIPIENTS: int = 500
    # поднять воркер внутри API-процесса (dev); в проде: отдельный chatblast-worker
    WORKER_EMBEDDED: bool = False

    # telegram-сессии устройств: device_id -> StringSession
    TG_API_ID: int = 0
    TG_API_HASH: str = ""
    TG_SESSIONS: dict[str, str] = {}


def get_settings() -> Settings:
    return Settings()
