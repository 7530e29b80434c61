import os
from pathlib import Path
from typing import Dict, Optional


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        print(f"WARNING: Ignoring invalid {name} value: {value!r}")
        return None


class Config:
    """Base configuration"""

    # Files
    BACKUP_SETTINGS_FILE = os.environ.get('BACKSTOW_SETTINGS_FILE') or 'backup_settings.xml'
    MODE = os.environ.get('BACKSTOW_MODE') or 'backup'

    # Logging
    DEBUG = False
    LOG_LEVEL = os.environ.get('BACKSTOW_LOG_LEVEL') or 'INFO'
    LOG_DIR = os.environ.get('BACKSTOW_LOG_DIR')

    # External programs (dump, import, openssl). None waits forever.
    COMMAND_TIMEOUT = _env_float('BACKSTOW_COMMAND_TIMEOUT')

    # Transfer
    BUFFER_SIZE = 32576
    # Bytes per SFTP read/write call
    SCP_CHUNK_SIZE = 32 * 1024
    SSH_PORT = 22
    PROGRESS_INTERVAL = 0.25


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


SETTINGS_FILE_NAME = 'backstow.conf'


def find_settings_file() -> Optional[str]:
    """
    Locate the program settings file.

    Search order: current directory, home directory, /etc.

    Returns:
        Path of the first existing file, or None
    """
    candidates = [
        Path(SETTINGS_FILE_NAME),
        Path.home() / SETTINGS_FILE_NAME,
        Path('/etc') / SETTINGS_FILE_NAME,
    ]

    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    return None


def load_settings_file(path: str) -> Dict[str, str]:
    """
    Read a ``key = value`` program settings file.

    Only ``backup_settings_file`` and ``mode`` are recognised; lines without
    an equal sign and unknown keys are skipped.

    Args:
        path: Path to the settings file

    Returns:
        Dict with the recognised keys that were present

    Raises:
        OSError: If the file cannot be read
    """
    settings = {}

    with open(os.path.expanduser(path), 'r') as f:
        for line in f:
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            if key in ('backup_settings_file', 'mode'):
                settings[key] = value.strip()

    return settings
