"""
Logging configuration for the attendance service.
"""

import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def setup_logging(log_level="INFO", log_dir=None, max_log_size=10 * 1024 * 1024, backup_count=5):
    """
    Configure root logging once per process.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_dir: directory for rotating log files; console only when None
        max_log_size: maximum size of one log file (bytes)
        backup_count: number of rotated files kept
    """
    global _configured
    if _configured:
        return

    level = getattr(logging, str(log_level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "smart_attendance.log",
            maxBytes=max_log_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "errors.log",
            maxBytes=max_log_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

        # QR token rejections go to their own file as well.
        security_handler = logging.handlers.RotatingFileHandler(
            log_path / "security.log",
            maxBytes=max_log_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        security_handler.setLevel(logging.INFO)
        security_handler.setFormatter(formatter)
        logging.getLogger("security").addHandler(security_handler)

    logging.getLogger("security").setLevel(logging.INFO)
    _configured = True

    root_logger.info("Smart attendance logging ready (level=%s, dir=%s)", logging.getLevelName(level), log_dir)
