"""Runtime settings for the console analyzer.

Settings come from environment variables; a ``.env`` file in the working
directory is loaded first so local overrides work without exporting anything.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("console_analyzer.config")

ENV_PREFIX = "CONSOLE_ANALYZER_"

# Correlation window for network requests
TIME_WINDOW_MS = 2000
# Lines of original source shown around a resolved line
CODE_CONTEXT_LINES = 3
DEFAULT_MAX_NETWORK_RECORDS = 50
DEFAULT_HTTP_TIMEOUT = 10


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s%s=%r (not an integer), using %d", ENV_PREFIX, name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Tunables for resolution, correlation and capture windows."""
    sourcemaps_enabled: bool = True
    window_ms: int = TIME_WINDOW_MS
    cache_size: int = 50
    context_lines: int = CODE_CONTEXT_LINES
    max_network_records: int = DEFAULT_MAX_NETWORK_RECORDS
    http_timeout: int = DEFAULT_HTTP_TIMEOUT
    first_match_lookup: bool = False
    rules_path: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from the environment.

        Args:
            dotenv: Load a ``.env`` file before reading variables.
        """
        if dotenv:
            load_dotenv()

        return cls(
            sourcemaps_enabled=_env_bool("SOURCEMAPS", True),
            window_ms=max(0, _env_int("WINDOW_MS", TIME_WINDOW_MS)),
            cache_size=max(1, _env_int("CACHE_SIZE", 50)),
            context_lines=max(0, _env_int("CONTEXT_LINES", CODE_CONTEXT_LINES)),
            max_network_records=max(1, _env_int("MAX_NETWORK", DEFAULT_MAX_NETWORK_RECORDS)),
            http_timeout=max(1, _env_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
            first_match_lookup=_env_bool("FIRST_MATCH", False),
            rules_path=os.environ.get(ENV_PREFIX + "RULES") or None,
        )
