# config.py
"""
Container Herald configuration.

All settings in one place. Every value can be overridden through
environment variables; nothing is reconfigured at runtime.
"""

import os

from .errors import ConfigError
from .formatter import EMBED_LOG_LIMIT_MAX, TEXT_LOG_LIMIT_MAX

# ============================================================
# DISCORD
# ============================================================

DISCORD_TOKEN = os.environ.get("DISCORD_TOKEN", "")
DISCORD_GUILD_ID = os.environ.get("DISCORD_GUILD_ID", "1209473653759016990")
DISCORD_CATEGORY_ID = os.environ.get("DISCORD_CATEGORY_ID", "1218191011348615240")
DISCORD_API_BASE = os.environ.get("DISCORD_API_BASE", "https://discord.com/api/v10")

# ============================================================
# LOOP TIMING (seconds)
# ============================================================

POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", "30"))
RECONCILE_INTERVAL = float(os.environ.get("RECONCILE_INTERVAL", "30"))
RECONCILE_WARMUP = float(os.environ.get("RECONCILE_WARMUP", "5"))

# Upper bound for exponential backoff after failed cycles. 0 = off
RETRY_BACKOFF_MAX = float(os.environ.get("RETRY_BACKOFF_MAX", "300"))

# ============================================================
# TIMEOUTS (seconds)
# ============================================================

SOURCE_TIMEOUT = float(os.environ.get("SOURCE_TIMEOUT", "20"))
SINK_TIMEOUT = float(os.environ.get("SINK_TIMEOUT", "15"))

# ============================================================
# OUTPUT LIMITS
# ============================================================

LOG_TAIL_LINES = int(os.environ.get("LOG_TAIL_LINES", "40"))
EMBED_LOG_LIMIT = int(os.environ.get("EMBED_LOG_LIMIT", "3900"))
TEXT_LOG_LIMIT = int(os.environ.get("TEXT_LOG_LIMIT", "1800"))

# "embed" or "text"
MESSAGE_STYLE = os.environ.get("MESSAGE_STYLE", "embed").lower()

# ============================================================
# RECONCILER BEHAVIOUR
# ============================================================

# Reuse same-named channels found in the category instead of creating duplicates
ADOPT_EXISTING_CHANNELS = os.environ.get("ADOPT_EXISTING_CHANNELS", "true").lower() == "true"

# ============================================================
# STATUS SERVER
# ============================================================

STATUS_HOST = os.environ.get("STATUS_HOST", "0.0.0.0")
STATUS_PORT = int(os.environ.get("STATUS_PORT", "8410"))

# ============================================================
# LOGGING
# ============================================================

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def validate_config() -> None:
    """Fail fast on settings the service cannot run without."""
    if not DISCORD_TOKEN:
        raise ConfigError("DISCORD_TOKEN is not set")
    for key, value in (("DISCORD_GUILD_ID", DISCORD_GUILD_ID),
                       ("DISCORD_CATEGORY_ID", DISCORD_CATEGORY_ID)):
        if not value.isdigit():
            raise ConfigError(f"{key} must be a numeric snowflake, got '{value}'")
    if MESSAGE_STYLE not in ("embed", "text"):
        raise ConfigError(f"MESSAGE_STYLE must be 'embed' or 'text', got '{MESSAGE_STYLE}'")
    for key, value, upper in (("EMBED_LOG_LIMIT", EMBED_LOG_LIMIT, EMBED_LOG_LIMIT_MAX),
                              ("TEXT_LOG_LIMIT", TEXT_LOG_LIMIT, TEXT_LOG_LIMIT_MAX)):
        if not 0 < value <= upper:
            raise ConfigError(f"{key} must be between 1 and {upper}, got {value}")
