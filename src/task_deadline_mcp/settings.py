from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_NAME = "task-deadline-mcp"  # Application name constant. Should be in format "kebab-case".

MIN_CHECK_INTERVAL_MS = 10_000


class TelegramBotSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TELEGRAM_BOT__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_token: str = Field(default="", description="Telegram Bot API token")
    chat_id: str = Field(
        default="", description="Chat that receives deadline reminders"
    )
    base_url: str = Field(
        default="https://api.telegram.org", description="Telegram Bot API base URL"
    )
    timeout_seconds: float = Field(default=15.0, description="HTTP timeout")
    parse_mode: str = Field(default="Markdown", description="Message parse mode")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token and self.chat_id)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=f"{APP_NAME.upper().replace('-', '_')}__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default=APP_NAME, description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    app_data_dir: str = Field(
        default=Path.home().joinpath(f".{APP_NAME}").as_posix(),
        description="Data directory path",
    )
    database_url: str = Field(
        default="",
        description="SQLAlchemy database URL; defaults to a SQLite file in app_data_dir",
    )

    # Reminder engine settings
    reminder_check_interval_ms: int = Field(
        default=60_000,
        description=f"Reminder polling cadence in ms (floor {MIN_CHECK_INTERVAL_MS})",
    )
    dispatch_workers: int = Field(
        default=4, ge=0, description="Threads used to deliver notifications; 0 delivers inline"
    )

    telegram_bot_settings: TelegramBotSettings = Field(
        default_factory=lambda: TelegramBotSettings(),
        description="Settings for the Telegram bot notifier",
    )

    # Logging settings
    logging_level: str = Field(
        default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING, ERROR)"
    )
    logging_format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> | {extra}",
        description="Logging format string",
    )

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        data_dir = Path(self.app_data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{data_dir.joinpath('tasks.sqlite3').as_posix()}"


def get_settings() -> Settings:
    """Retrieve application settings."""
    return Settings()
