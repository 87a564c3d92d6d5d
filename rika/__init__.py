import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(verbose=False, config_name=None, log_to_file=True):
    """Configure application logging"""
    from rika.config import get_config
    cfg = get_config(config_name)

    # Set log level based on verbosity
    log_level = logging.DEBUG if (verbose or cfg.DEBUG) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_to_file:
        os.makedirs(cfg.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(cfg.LOG_DIR, cfg.LOG_FILE),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure the package logger; the root logger is left to the host
    logger = logging.getLogger('rika')
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
