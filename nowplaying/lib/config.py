"""
Shared configuration loader for the now-playing service.

Loads a single JSON config file.  Search order:
  1. $NOWPLAYING_CONFIG               (explicit override)
  2. /etc/nowplaying/config.json      (system install)
  3. config.json                      (CWD — handy for local dev)
  4. ../config/default.json           (repo fallback)

Usage:
    from nowplaying.lib.config import cfg

    source_type   = cfg("source", "type", default="auto")
    poll_interval = cfg("monitor", "poll_interval_ms", default=1000)
    artwork       = cfg("artwork")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

SOURCE_TYPES = ("auto", "playerctl", "applescript", "media_session")


def _search_paths() -> list[str]:
    paths = []
    override = os.environ.get("NOWPLAYING_CONFIG")
    if override:
        paths.append(override)
    paths += [
        "/etc/nowplaying/config.json",
        "config.json",
        os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
    ]
    return paths


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    source = config.get("source") or {}
    source_type = source.get("type", "auto")
    if source_type not in SOURCE_TYPES:
        logger.warning("Config %s: unknown source.type '%s'", path, source_type)
    if source_type == "media_session" and not source.get("helper"):
        logger.warning("Config %s: source.type is media_session but no source.helper set", path)

    artwork = config.get("artwork") or {}
    for key in ("max_bytes", "max_entries", "max_retries"):
        val = artwork.get(key)
        if val is not None and (not isinstance(val, int) or val <= 0):
            logger.warning("Config %s: artwork.%s should be a positive integer, got %r", path, key, val)

    monitor = config.get("monitor") or {}
    interval = monitor.get("poll_interval_ms")
    if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
        logger.warning("Config %s: monitor.poll_interval_ms should be positive, got %r", path, interval)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("source")                         → config["source"]
    cfg("source", "type")                 → config["source"]["type"]
    cfg("artwork", "max_entries", default=200) → config["artwork"]["max_entries"] or 200
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
