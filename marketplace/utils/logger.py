import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from marketplace.config import Settings, get_settings

LOGGER_NAME = "marketplace_api"
CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _rotating(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)  # 10MB x 5
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def configure_logging(settings: Settings) -> logging.Logger:
    """(Re)build the app logger: stdout always, app.log/errors.log when LOG_TO_FILE."""
    root = logging.getLogger(LOGGER_NAME)
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO
    root.setLevel(level)

    # Prevent duplicate logs
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)

    if settings.LOG_TO_FILE:
        logs_dir = Path(settings.LOG_DIR)
        logs_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating(logs_dir / "app.log", logging.INFO))
        root.addHandler(_rotating(logs_dir / "errors.log", logging.ERROR))
    return root


logger = configure_logging(get_settings())


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance. If name is provided, returns a child logger."""
    if name:
        return logger.getChild(name)
    return logger


def mask(value: str | None, keep: int = 2) -> str:
    """Mask a secret-ish value for logs, keeping only the last ``keep`` chars."""
    if not value:
        return ""
    if len(value) <= keep:
        return "*" * len(value)
    return "*" * (len(value) - keep) + value[-keep:]
