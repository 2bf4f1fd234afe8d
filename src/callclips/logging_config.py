"""Logging setup for the callclips worker and its CLI commands.

Levels are taken from :class:`~callclips.config.WorkerConfig`
(``LOG_LEVEL`` / ``LOG_MODULE_LEVELS`` or the matching YAML keys); this
module never reads the environment itself.

Usage:
    from callclips.logging_config import setup_worker_logging
    setup_worker_logging(cfg, verbose=args.verbose, log_file=args.log_file)

    # Then in any module:
    import logging
    logger = logging.getLogger(__name__)
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional

if TYPE_CHECKING:
    from .config import WorkerConfig

PACKAGE_LOGGER = "callclips"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def parse_level(name: str) -> int:
    """``"debug"`` -> ``logging.DEBUG``. Raises ValueError for unknown names."""
    level = getattr(logging, str(name).strip().upper(), None)
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError(f"unknown log level {name!r}")
    return level


def qualify_logger_name(name: str) -> str:
    name = name.strip()
    if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
        return name
    return f"{PACKAGE_LOGGER}.{name}"


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    module_levels: Optional[Mapping[str, str]] = None,
) -> logging.Logger:
    """Attach stderr (and optionally file) handlers to the package logger.

    Only the first call has an effect, so CLI commands can call it freely.
    ``module_levels`` maps logger names (``conversation`` or
    ``callclips.conversation``) to level names.
    """
    global _configured
    logger = logging.getLogger(PACKAGE_LOGGER)
    if _configured:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logger.setLevel(level)
    logger.handlers.clear()
    for handler in handlers:
        # Per-module overrides may be more verbose than the package level.
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False

    for name, level_name in (module_levels or {}).items():
        logging.getLogger(qualify_logger_name(name)).setLevel(parse_level(level_name))

    _configured = True
    return logger


def setup_worker_logging(
    cfg: "WorkerConfig",
    *,
    verbose: bool = False,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    level = logging.DEBUG if verbose else parse_level(cfg.log_level)
    return setup_logging(level, log_file=log_file, module_levels=cfg.log_module_levels)
