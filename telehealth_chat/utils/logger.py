import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from telehealth_chat.config import Settings, get_settings

CONSOLE_FORMAT = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
FILE_FORMAT = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    handler.setLevel(level)
    handler.setFormatter(FILE_FORMAT)
    return handler


def setup_logging(settings: Settings) -> logging.Logger:
    """Configure the package logger: stdout plus rotating app/error log files."""
    root = logging.getLogger(settings.APP_NAME)
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO
    root.setLevel(level)
    root.propagate = False

    # Prevent duplicate logs when reconfigured
    if root.handlers:
        root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(CONSOLE_FORMAT)
    root.addHandler(console_handler)

    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    root.addHandler(_rotating_handler(logs_dir / "app.log", logging.INFO))
    root.addHandler(_rotating_handler(logs_dir / "errors.log", logging.ERROR))

    # socket.io / engine.io are chatty at INFO; keep them at warnings unless debugging transport
    for noisy in ("socketio.client", "engineio.client"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root


logger = setup_logging(get_settings())

def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance. If name is provided, returns a child logger."""
    if name:
        return logger.getChild(name)
    return logger
