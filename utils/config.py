"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Public links
    public_base_url: str = field(
        default_factory=lambda: os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    )
    token_expiry_days: int = field(
        default_factory=lambda: int(os.getenv("TOKEN_EXPIRY_DAYS", "7"))
    )

    # Notifications
    notification_webhook_url: Optional[str] = field(
        default_factory=lambda: os.getenv("NOTIFICATION_WEBHOOK_URL") or None
    )
    notification_timeout: float = field(
        default_factory=lambda: float(os.getenv("NOTIFICATION_TIMEOUT", "5"))
    )

    # Documents
    brokerage_name: str = field(
        default_factory=lambda: os.getenv("BROKERAGE_NAME", "Independent Brokerage")
    )

    # Agent assignment: roster used when a property has no listing agent
    default_agent_ids: list[str] = field(
        default_factory=lambda: [a.strip() for a in os.getenv("DEFAULT_AGENT_IDS", "").split(",") if a.strip()]
    )

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    @property
    def repository_path(self) -> str:
        return os.path.join(self.data_dir, "workflow.json")

    @property
    def tokens_path(self) -> str:
        return os.path.join(self.data_dir, "viewing_tokens.json")

    @property
    def activity_log_path(self) -> str:
        return os.path.join(self.data_dir, "activity_log.json")

    @property
    def artifacts_dir(self) -> str:
        return os.path.join(self.data_dir, "agreements")

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "log_level": self.log_level,
            "public_base_url": self.public_base_url,
            "token_expiry_days": self.token_expiry_days,
            "notification_webhook_url": self.notification_webhook_url,
            "notification_timeout": self.notification_timeout,
            "brokerage_name": self.brokerage_name,
            "default_agent_ids": list(self.default_agent_ids),
            "data_dir": self.data_dir,
        }
