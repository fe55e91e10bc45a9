import logging
from typing import Dict

from core.errors import ConfigError


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVELS: Dict[str, int] = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Logger trees whose level follows --log
PROJECT_LOGGERS = ("core", "harness", "dht-tester")


def parse_level(name: str) -> int:
    """Map a --log value (error|warn|info|debug) to a logging level."""
    try:
        return LEVELS[name.strip().lower()]
    except (KeyError, AttributeError):
        raise ConfigError(
            f"invalid log level {name!r}: must be one of {'|'.join(LEVELS)}"
        ) from None


def configure_logging(level: str = "info") -> int:
    """Configure root formatting once and set project logger levels."""
    numeric = parse_level(level)
    logging.basicConfig(
        level=logging.WARNING,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    for name in PROJECT_LOGGERS:
        logging.getLogger(name).setLevel(numeric)
    # aiohttp access logs are noisy at info
    logging.getLogger("aiohttp.access").setLevel(max(numeric, logging.WARNING))
    return numeric
