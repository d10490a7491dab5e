"""
Atlas Agents Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/atlas")
    POSTGRES_POOL_MIN_SIZE: int = int(os.getenv("POSTGRES_POOL_MIN_SIZE", "1"))
    POSTGRES_POOL_MAX_SIZE: int = int(os.getenv("POSTGRES_POOL_MAX_SIZE", "10"))

    # Task queue
    # Priority applied when assign_task is called without one (1 = lowest, 10 = highest)
    DEFAULT_TASK_PRIORITY: int = int(os.getenv("DEFAULT_TASK_PRIORITY", "5"))
    # Notification tasks created by event fan-out sit below ordinary work
    EVENT_NOTIFICATION_PRIORITY: int = int(os.getenv("EVENT_NOTIFICATION_PRIORITY", "3"))

    # Event log / graph query limits
    RECENT_EVENTS_LIMIT: int = int(os.getenv("RECENT_EVENTS_LIMIT", "100"))
    DEFAULT_PATH_DEPTH: int = int(os.getenv("DEFAULT_PATH_DEPTH", "5"))
    SEARCH_RESULT_LIMIT: int = int(os.getenv("SEARCH_RESULT_LIMIT", "50"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors for out-of-range values."""
        for name in ("DEFAULT_TASK_PRIORITY", "EVENT_NOTIFICATION_PRIORITY"):
            value = getattr(cls, name)
            if not 1 <= value <= 10:
                raise ValueError(f"{name} must be between 1 and 10 (got {value})")

        for name in ("RECENT_EVENTS_LIMIT", "DEFAULT_PATH_DEPTH", "SEARCH_RESULT_LIMIT"):
            if getattr(cls, name) < 1:
                raise ValueError(f"{name} must be a positive integer")

        if cls.POSTGRES_POOL_MIN_SIZE > cls.POSTGRES_POOL_MAX_SIZE:
            raise ValueError(
                "POSTGRES_POOL_MIN_SIZE cannot exceed POSTGRES_POOL_MAX_SIZE "
                f"({cls.POSTGRES_POOL_MIN_SIZE} > {cls.POSTGRES_POOL_MAX_SIZE})"
            )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Atlas Agents Configuration:",
            f"  Database: {cls.DATABASE_URL}",
            f"  Pool Size: {cls.POSTGRES_POOL_MIN_SIZE}-{cls.POSTGRES_POOL_MAX_SIZE}",
            f"  Default Task Priority: {cls.DEFAULT_TASK_PRIORITY}",
            f"  Notification Priority: {cls.EVENT_NOTIFICATION_PRIORITY}",
            f"  Recent Events Limit: {cls.RECENT_EVENTS_LIMIT}",
            f"  Path Depth: {cls.DEFAULT_PATH_DEPTH}",
            f"  Search Limit: {cls.SEARCH_RESULT_LIMIT}",
            f"  Log Level: {cls.LOG_LEVEL}",
        ]
        return "\n".join(lines)
