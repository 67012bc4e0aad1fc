import logging
import os
from pathlib import Path
import sys
import tempfile

from dotenv import load_dotenv

load_dotenv()

_loggers = {}

_TRUTHY = {"1", "true", "yes", "on"}
_FORMAT = "[%(asctime)s] - %(name)s %(levelname)s %(message)s"


def setup_logger(name="exampipe", level=None, tofile=False, filename=None):
    """
    Configure the package logger for the API and CLI entrypoints.

    Modules log through ``logging.getLogger(__name__)`` and propagate to the
    ``exampipe`` logger configured here.

    Args
        name: name of the logger
        level: logging level (defaults to LOG_LEVEL, then INFO)
        tofile: also write to a file (or set LOG_TO_FILE)
        filename: log file path (defaults to LOG_FILE_PATH)

    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not logger.handlers:
        formatter = logging.Formatter(_FORMAT)
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

        if tofile or os.getenv("LOG_TO_FILE", "false").lower() in _TRUTHY:
            _add_file_handler(logger, formatter, filename or os.getenv("LOG_FILE_PATH", "exampipe.log"))

    _loggers[name] = logger
    return logger


def _add_file_handler(logger, formatter, target):
    path = Path(target)
    # Fall back to the temp dir when the target directory is read-only
    if not os.access(path.parent, os.W_OK):
        path = Path(tempfile.gettempdir()) / path.name
    try:
        file_handler = logging.FileHandler(path)
    except OSError as e:
        logger.error("File logging disabled for %s: %s", path, e)
        return
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
