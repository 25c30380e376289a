import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Any

DEFAULT_FORMAT = '%(asctime)s - %(name)s - [%(levelname)s] - %(message)s'


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Setup application-wide logging configuration.

    Args:
        config: Dictionary containing logging configuration
            {
                'level': str,  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                'file': str,   # Optional log file path, console only when absent
                'max_size': int,  # Max size in MB before rotation
                'backup_count': int,  # Number of backup files to keep
                'format': str  # Log message format
            }
    """
    log_level = getattr(logging, str(config.get('level') or 'INFO').upper(), logging.INFO)
    log_file = config.get('file')
    max_size = (config.get('max_size') or 10) * 1024 * 1024  # MB to bytes
    backup_count = config.get('backup_count', 5)
    formatter = logging.Formatter(config.get('format') or DEFAULT_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # journald picks up stderr when running under systemd
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # zeroconf and hypercorn are chatty at INFO
    logging.getLogger("zeroconf").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("hypercorn.access").setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Usually __name__ of the module

    Returns:
        logging.Logger: Configured logger instance
    """
    return logging.getLogger(name)
