"""
Command line entry point.

Values are taken from the command line first, then from the program
settings file (``-c`` or the first ``backstow.conf`` found), then from the
environment backed ``Config`` defaults.
"""

import argparse
import logging
import os
from typing import List, Optional

from backstow import __version__, configure_logging
from backstow.backup.executor import execute_backup
from backstow.backup.restore import execute_restore
from backstow.config import config, find_settings_file, load_settings_file
from backstow.errors import ConfigurationError
from backstow.settings import load_configuration


logger = logging.getLogger(__name__)

MODES = ('backup', 'restore')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backstow',
        description='Back up directories and databases, or restore the latest backup.',
    )
    parser.add_argument(
        '-s', '--backup-settings-file',
        help='Path of the XML backup settings file.'
    )
    parser.add_argument(
        '-c', '--config',
        help='Path of the program settings file (default: search for backstow.conf).'
    )
    parser.add_argument(
        '-m', '--mode',
        help='Run mode: backup or restore.'
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Enable debug logging.'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def resolve_options(args: argparse.Namespace, app_config) -> dict:
    """
    Merge command line, program settings file and defaults.

    Raises:
        ConfigurationError: If an explicitly given settings file can't be read
    """
    settings_path = args.config
    if settings_path is not None and not os.path.isfile(os.path.expanduser(settings_path)):
        raise ConfigurationError(f"settings file '{settings_path}' does not exist.")
    if settings_path is None:
        settings_path = find_settings_file()

    file_settings = {}
    if settings_path is not None:
        try:
            file_settings = load_settings_file(settings_path)
        except OSError as e:
            raise ConfigurationError(f"unable to read settings file '{settings_path}': {e}")
        logger.debug(f"Loaded settings file {settings_path}")

    return {
        'backup_settings_file': (
            args.backup_settings_file
            or file_settings.get('backup_settings_file')
            or app_config.BACKUP_SETTINGS_FILE
        ),
        'mode': args.mode or file_settings.get('mode') or app_config.MODE,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run backstow.

    Returns:
        Process exit code: 0 on success, 1 on any error
    """
    args = build_parser().parse_args(argv)

    app_config = config.get(os.environ.get('BACKSTOW_ENV') or 'default', config['default'])
    configure_logging(app_config, verbose=args.verbose)

    try:
        options = resolve_options(args, app_config)

        mode = options['mode'].strip().lower()
        if mode not in MODES:
            logger.error(f"Invalid mode '{options['mode']}', expected one of: {', '.join(MODES)}")
            return 1

        configuration = load_configuration(options['backup_settings_file'])

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Running {mode} with {options['backup_settings_file']}")

    if mode == 'backup':
        result = execute_backup(configuration, app_config.COMMAND_TIMEOUT)
    else:
        result = execute_restore(configuration, app_config.COMMAND_TIMEOUT)

    return 0 if result.succeeded else 1
