# threatflow/config.py
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

import structlog

from threatflow.errors import InvalidInput

logger = structlog.get_logger(__name__)

DEFAULT_SINK_SIZE = 64


@dataclass(frozen=True)
class Settings:
    """Snapshot of the process environment taken at start-up or reload."""
    env: Mapping[str, str] = field(default_factory=dict)
    log_level: str = "info"
    log_format: str = "json"
    # seconds without a chunk before a relay is abandoned; None disables it
    stream_idle_timeout: Optional[float] = None
    sink_size: int = DEFAULT_SINK_SIZE


def _parse_number(env: Mapping[str, str], key: str, kind, default, strict: bool):
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = kind(raw)
    except ValueError:
        value = None
    if value is None or value <= 0:
        if strict:
            raise InvalidInput(f"{key} must be a positive number, got {raw!r}")
        logger.warning("Ignoring invalid setting, using default", key=key, value=raw, default=default)
        return default
    return value


def load_settings(env: Mapping[str, str], strict: bool = True) -> Settings:
    """Build settings from ``env``.

    With ``strict`` a bad numeric value raises :class:`InvalidInput`;
    otherwise it is logged and replaced by the default.
    """
    return Settings(
        env=dict(env),
        log_level=env.get("THREATFLOW_LOG_LEVEL", "info"),
        log_format=env.get("THREATFLOW_LOG_FORMAT", "json"),
        stream_idle_timeout=_parse_number(env, "THREATFLOW_STREAM_IDLE_TIMEOUT", float, None, strict),
        sink_size=_parse_number(env, "THREATFLOW_SINK_SIZE", int, DEFAULT_SINK_SIZE, strict),
    )


_cfg: Settings = Settings()

def get_config() -> Settings:
    return _cfg

def set_config(env: Optional[Mapping[str, str]] = None) -> Settings:
    # never raises; bad numbers fall back to their defaults
    global _cfg
    _cfg = load_settings(os.environ if env is None else env, strict=False)
    logger.debug("Configuration loaded", idle_timeout=_cfg.stream_idle_timeout, sink_size=_cfg.sink_size)
    return _cfg
