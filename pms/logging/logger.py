import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# Names already wired up; repeated calls must not stack handlers
_configured_loggers = set()


def _settings():
    # Read lazily so pms stays importable without the config package
    try:
        from config.settings import LOG_DIR, LOG_LEVEL
    except ImportError:
        return "INFO", "logs"
    return LOG_LEVEL, LOG_DIR


def resolve_level(level: Union[int, str, None], default: str = "INFO") -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level or default).upper(), logging.INFO)


def setup_logger(
    name: str,
    log_file: Optional[str] = None,
    level: Union[int, str, None] = None,
    console: bool = True
) -> logging.Logger:
    """
    Attach a size-rotated file handler (and optionally stderr) to a logger.

    Passing "pms" configures every ledger, margin and monitor module at once,
    since they log under pms.<module>.

    Args:
        name: Logger name; the file defaults to <LOG_DIR>/<name>.log
        log_file: Explicit file path
        level: Level name or number (defaults to config.settings.LOG_LEVEL)
        console: Also echo to stderr
    """
    default_level, log_dir = _settings()
    level = resolve_level(level, default_level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if name in _configured_loggers:
        return logger
    logger.propagate = False

    path = Path(log_file) if log_file else Path(log_dir) / f"{name}.log"
    path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [RotatingFileHandler(str(path), maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT)]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)

    _configured_loggers.add(name)
    return logger
