import argparse
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

SERVICE_NAME = "vless-generator"
SERVICE_VERSION = "1.0.0"

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

_INT_RE = re.compile(r"[+-]?[0-9]+")

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Process-level settings for the HTTP service."""
    port: int = 8080
    host: str = "0.0.0.0"
    log_level: str = "info"
    log_format: str = "json"
    templates_dir: str = "templates"
    html_dir: str = "templates"
    template_types: List[str] = field(default_factory=lambda: ["vless"])
    locales_dir: str = "locales"

    def resolve(self, path: str) -> str:
        """Resolve a directory relative to the project directory."""
        if os.path.isabs(path):
            return path
        return os.path.join(BASE_DIR, path)


@dataclass
class DynamicConfig:
    """Per-request overrides applied to a template."""
    server: str = "vless.example.com"
    server_port: int = 443
    ws_path: str = "/websocket"
    dns_server: str = "8.8.8.8"
    doh_server: str = "https://223.5.5.5/dns-query"
    tun_address: str = "172.19.0.1/28"
    mixed_port: int = 2080
    tun_mtu: int = 9000


# query key -> (field name, is integer)
QUERY_FIELDS = {
    "server": ("server", False),
    "port": ("server_port", True),
    "ws-path": ("ws_path", False),
    "dns-server": ("dns_server", False),
    "doh-server": ("doh_server", False),
    "tun-address": ("tun_address", False),
    "mixed-port": ("mixed_port", True),
    "tun-mtu": ("tun_mtu", True),
}


def _parse_int(value: str) -> Optional[int]:
    if not _INT_RE.fullmatch(value):
        return None
    return int(value)


def parse_dynamic_config(query: Mapping[str, str]) -> DynamicConfig:
    """Build a DynamicConfig from query parameters, keeping defaults for missing or malformed values."""
    config = DynamicConfig()

    for key, (attr, is_int) in QUERY_FIELDS.items():
        value = query.get(key)
        if not value:
            continue
        if is_int:
            parsed = _parse_int(value)
            if parsed is None:
                logger.debug(f"Ignoring malformed integer for '{key}': {value!r}")
                continue
            setattr(config, attr, parsed)
        else:
            setattr(config, attr, value)

    return config


def load_settings(argv: Optional[List[str]] = None) -> Settings:
    """Read settings from environment variables, then command-line flags."""
    env_port = os.environ.get("PORT", "8080")
    try:
        default_port = int(env_port)
    except ValueError:
        logger.warning(f"Invalid PORT environment value {env_port!r}, using 8080")
        default_port = 8080

    parser = argparse.ArgumentParser(description="VLESS configuration generator service")
    parser.add_argument("--port", type=int, default=default_port, help="Port to run the HTTP server on")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"), help="Address to bind")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=os.environ.get("LOG_LEVEL", "info"),
        help="Log level (debug, info, warn, error)",
    )
    parser.add_argument(
        "--log-format",
        dest="log_format",
        choices=["json", "text"],
        default=os.environ.get("LOG_FORMAT", "json"),
        help="Log format (json, text)",
    )
    args = parser.parse_args(argv)

    return Settings(
        port=args.port,
        host=args.host,
        log_level=args.log_level,
        log_format=args.log_format,
    )


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

# attributes every LogRecord carries; anything else was passed through `extra`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure the root logger."""
    log_level = _LEVELS.get(level.lower())
    invalid_level = log_level is None
    if invalid_level:
        log_level = logging.INFO

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s', "%Y-%m-%d %H:%M:%S")
        )

    logging.basicConfig(level=log_level, handlers=[handler], force=True)

    if invalid_level:
        logger.warning(f"Invalid log level {level!r}, using info")
    logger.info(
        "Logging configured successfully",
        extra={"service": SERVICE_NAME, "version": SERVICE_VERSION},
    )
