"""Environment-based configuration."""

from __future__ import annotations

import dataclasses
import os
import re
from collections.abc import Mapping

ENV_EXAMPLE = """\
# .env
HTTP_HOST=0.0.0.0
HTTP_PORT=8080
PENALTY_TIME=10s
SIP_SERVER=sip.example.com
SIP_PORT=5060
SIP_USER=1000
SIP_PASSWORD=secret
SIP_CALL_NUMBER=+420123456789
SIP_REREGISTER_TIME=4m
SIP_REGISTER_EXPIRES=300
LOG_LEVEL=DEBUG
"""

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


class ConfigError(ValueError):
    """Missing or invalid configuration value."""


def parse_duration(value: str) -> float:
    """Parse ``"90"``, ``"1.5s"``, ``"250ms"`` or ``"1m30s"`` into seconds."""
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"Invalid duration {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way ``parse_duration`` reads them (``1m30s``)."""
    if seconds < 1:
        return f"{round(seconds * 1000)}ms"
    minutes, secs = divmod(round(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


@dataclasses.dataclass(frozen=True)
class SipAccount:
    user: str
    password: str
    server: str
    port: int = 5060


@dataclasses.dataclass(frozen=True)
class Config:
    account: SipAccount
    call_number: str
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    penalty_time: float = 10.0
    reregister_time: float = 240.0
    register_expires: int = 300
    log_level: str = "DEBUG"


def _required(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} is not set")
    return value


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _duration(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return parse_duration(value)
    except ConfigError:
        raise ConfigError(f"{name} must be a duration, got {value!r}") from None


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a ``Config`` from *environ* (defaults to ``os.environ``)."""
    if environ is None:
        environ = os.environ
    account = SipAccount(
        user=_required(environ, "SIP_USER"),
        password=_required(environ, "SIP_PASSWORD"),
        server=_required(environ, "SIP_SERVER"),
        port=_int(environ, "SIP_PORT", 5060),
    )
    config = Config(
        account=account,
        call_number=_required(environ, "SIP_CALL_NUMBER"),
        http_host=environ.get("HTTP_HOST", "").strip() or "0.0.0.0",
        http_port=_int(environ, "HTTP_PORT", 8080),
        penalty_time=_duration(environ, "PENALTY_TIME", 10.0),
        reregister_time=_duration(environ, "SIP_REREGISTER_TIME", 240.0),
        register_expires=_int(environ, "SIP_REGISTER_EXPIRES", 300),
        log_level=environ.get("LOG_LEVEL", "").strip().upper() or "DEBUG",
    )
    if config.reregister_time <= 0:
        raise ConfigError("SIP_REREGISTER_TIME must be positive")
    return config
