import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default) not in {"0", "false", "False", "no", "off"}


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
HA_BASE_URL = os.getenv("HA_BASE_URL", "").strip().rstrip("/")
HA_TOKEN = os.getenv("HA_TOKEN", "").strip()
HA_VERIFY_SSL = _env_flag("HA_VERIFY_SSL", "1")
HA_REQUEST_TIMEOUT_SECONDS = float(os.getenv("HA_REQUEST_TIMEOUT_SECONDS", "10"))

# Comma-separated list, e.g. "h2s,bambu_x1c". Empty means "discover at startup".
ENTITY_PREFIXES = [
    p.strip() for p in os.getenv("ENTITY_PREFIXES", "").split(",") if p.strip()
]
AUTO_DISCOVER = _env_flag("AUTO_DISCOVER", "1")

DEFAULT_POLL_INTERVAL_SECONDS = 30
MIN_POLL_INTERVAL_SECONDS = 15
MAX_POLL_INTERVAL_SECONDS = 120
POLL_INTERVAL_SECONDS = int(
    os.getenv("POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS))
)
MAX_CONCURRENT_READS = int(os.getenv("MAX_CONCURRENT_READS", "8"))
FETCH_COVER_IMAGE = _env_flag("FETCH_COVER_IMAGE", "1")
MONITOR_FEEDERS = _env_flag("MONITOR_FEEDERS", "1")

NOTIFICATIONS_ENABLED = _env_flag("NOTIFICATIONS_ENABLED", "1")
NOTIFY_ON_START = _env_flag("NOTIFY_ON_START", "1")
NOTIFY_ON_PAUSE = _env_flag("NOTIFY_ON_PAUSE", "1")
NOTIFY_ON_RESUME = _env_flag("NOTIFY_ON_RESUME", "0")
NOTIFY_ON_COMPLETE = _env_flag("NOTIFY_ON_COMPLETE", "1")
NOTIFY_ON_FAILED = _env_flag("NOTIFY_ON_FAILED", "1")
MILESTONE_INTERVAL = int(os.getenv("MILESTONE_INTERVAL", "0"))

LIVE_SESSION_BACKEND = os.getenv("LIVE_SESSION_BACKEND", "log").strip().lower()

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")  # e.g. "-100123456789"
TELEGRAM_THREAD_ID = os.getenv("TELEGRAM_THREAD_ID")  # optional

PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def clamp_poll_interval(seconds: Optional[float]) -> int:
    """Coerce a requested poll interval into the supported 15-120 s window."""
    if seconds is None:
        return DEFAULT_POLL_INTERVAL_SECONDS
    try:
        value = int(seconds)
    except (TypeError, ValueError):
        return DEFAULT_POLL_INTERVAL_SECONDS
    return max(MIN_POLL_INTERVAL_SECONDS, min(MAX_POLL_INTERVAL_SECONDS, value))


@dataclass
class NotificationSettings:
    enabled: bool = True
    notify_on_start: bool = True
    notify_on_pause: bool = True
    notify_on_resume: bool = False
    notify_on_complete: bool = True
    notify_on_failed: bool = True
    # 0 disables milestone announcements; 25 means 25/50/75.
    milestone_interval: int = 0

    @property
    def milestones_enabled(self) -> bool:
        return self.enabled and self.milestone_interval > 0

    @classmethod
    def from_env(cls) -> "NotificationSettings":
        return cls(
            enabled=NOTIFICATIONS_ENABLED,
            notify_on_start=NOTIFY_ON_START,
            notify_on_pause=NOTIFY_ON_PAUSE,
            notify_on_resume=NOTIFY_ON_RESUME,
            notify_on_complete=NOTIFY_ON_COMPLETE,
            notify_on_failed=NOTIFY_ON_FAILED,
            milestone_interval=max(0, MILESTONE_INTERVAL),
        )


@dataclass
class MonitorSettings:
    entity_prefixes: List[str] = field(default_factory=list)
    poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS
    max_concurrent_reads: int = 8
    fetch_cover_image: bool = True
    monitor_feeders: bool = True
    auto_discover: bool = True

    @classmethod
    def from_env(cls) -> "MonitorSettings":
        return cls(
            entity_prefixes=list(ENTITY_PREFIXES),
            poll_interval=clamp_poll_interval(POLL_INTERVAL_SECONDS),
            max_concurrent_reads=max(1, MAX_CONCURRENT_READS),
            fetch_cover_image=FETCH_COVER_IMAGE,
            monitor_feeders=MONITOR_FEEDERS,
            auto_discover=AUTO_DISCOVER,
        )


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level or LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
