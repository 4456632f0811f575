import logging
import logging.config
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from safu.config import settings


def setup_logging(log_dir: str = None, level: str = None) -> logging.Logger:
    """Console + daily rotating file logging for the whole process."""
    # Quiet SQLAlchemy
    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'loggers': {
            'sqlalchemy.engine': {'level': 'ERROR', 'handlers': [], 'propagate': False},
            'sqlalchemy.pool': {'level': 'ERROR', 'handlers': [], 'propagate': False},
            'sqlalchemy.dialects': {'level': 'ERROR', 'handlers': [], 'propagate': False},
        }
    })

    log_path = Path(log_dir or settings.LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid duplicate handlers if reloaded
    if logger.handlers:
        logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

    # New file every midnight, keep 30 days
    file_handler = TimedRotatingFileHandler(
        filename=log_path / "safu.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(funcName)s:%(lineno)d - %(levelname)s - %(message)s'
    ))

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    sys.excepthook = handle_exception
    return logger


def handle_exception(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logging.getLogger().critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def short(address: str) -> str:
    """Wallet/tx abbreviation for log lines."""
    if not address:
        return "?"
    return f"{address[:8]}..."
