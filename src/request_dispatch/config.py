"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".request_dispatch" / "rd.db")
    presence_window: float = 10.0
    reap_interval: float | None = None
    sweep_interval: float = 3.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def effective_reap_interval(self) -> float:
        if self.reap_interval is not None:
            return self.reap_interval
        return max(self.presence_window, 5.0)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("RD_DB_PATH"):
            config.db_path = Path(db)

        if window := os.environ.get("RD_PRESENCE_WINDOW"):
            config.presence_window = float(window)

        if reap := os.environ.get("RD_REAP_INTERVAL"):
            config.reap_interval = float(reap)

        if sweep := os.environ.get("RD_SWEEP_INTERVAL"):
            config.sweep_interval = float(sweep)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("RD_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
