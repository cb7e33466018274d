import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(config):
    """
    Configures the root logger based on the settings object.
    """
    try:
        log_settings = config.logging
    except AttributeError:
        logging.basicConfig(level=logging.INFO)
        logging.getLogger(__name__).warning(
            "'logging' section not in config. Using basic logging."
        )
        return

    logger = logging.getLogger()
    logger.setLevel(log_settings.level.upper())

    # Clear existing handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(log_settings.format)

    # 1. Console
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_settings.level.upper())
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 2. Rotating file, if configured
    if log_settings.log_to_file:
        log_file_path = Path(log_settings.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=log_settings.rotation_size_mb * 1024 * 1024,
            backupCount=log_settings.rotation_backup_count,
        )
        file_handler.setLevel(log_settings.level.upper())
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.debug("Logging configured.")
