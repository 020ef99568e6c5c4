"""
Package logging setup.
"""

import logging
from typing import Callable, Union

from subpal_bridge.settings import ConfigSource

PACKAGE_LOGGER = "subpal_bridge"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DEBUG_MODE_KEY = "debugMode"


def configure_logging(level: Union[str, int] = "INFO") -> logging.Logger:
    """Give the package logger one stream handler at `level`. Safe to call repeatedly."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level if isinstance(level, int) else level.upper())
    if not any(getattr(h, "_subpal", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._subpal = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


def bind_debug_mode(config: ConfigSource, base_level: Union[str, int] = "INFO") -> Callable[[], None]:
    """Follow the `debugMode` config key: DEBUG while on, `base_level` while off."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    base = base_level if isinstance(base_level, int) else logging.getLevelName(base_level.upper())

    def apply(enabled: object) -> None:
        logger.setLevel(logging.DEBUG if enabled else base)

    apply(config.get(DEBUG_MODE_KEY))
    return config.subscribe([DEBUG_MODE_KEY], lambda _key, new, _old: apply(new))
