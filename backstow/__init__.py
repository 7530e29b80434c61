"""
backstow - configuration driven backup and restore.

Archives directories and database dumps, optionally compresses and
encrypts them, and ships them to a local directory, S3 or an SSH server.
The restore mode finds the newest matching archive and unpacks it again.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.4.0'


def configure_logging(config, verbose: bool = False):
    """Configure application logging"""

    # Set log level based on environment
    if verbose or config.DEBUG:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(str(config.LOG_LEVEL).upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # Console handler (diagnostics go to stderr, progress output to stdout)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if config.LOG_DIR:
        os.makedirs(config.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(config.LOG_DIR, 'backstow.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto and paramiko are chatty at DEBUG
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

    logging.getLogger(__name__).debug(
        f"Logging configured (level: {logging.getLevelName(log_level)})"
    )
