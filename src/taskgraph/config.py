"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".taskgraph" / "tasks.db")
    busy_timeout_ms: int = 5000
    log_level: str = "WARNING"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    web_host: str = "127.0.0.1"
    web_port: int = 8787

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TG_DB_PATH"):
            config.db_path = Path(db).expanduser()

        if timeout := os.environ.get("TG_BUSY_TIMEOUT_MS"):
            config.busy_timeout_ms = int(timeout)

        if level := os.environ.get("TG_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("TG_SLACK_CHANNEL")

        if host := os.environ.get("TG_WEB_HOST"):
            config.web_host = host

        if port := os.environ.get("TG_WEB_PORT"):
            config.web_port = int(port)

        return config

    @property
    def slack_enabled(self) -> bool:
        return bool(self.slack_bot_token and self.slack_channel)


def get_config() -> Config:
    return Config.from_env()
