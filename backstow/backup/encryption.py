"""
File encryption through the openssl command line tool.

The passphrase is handed to openssl through its environment
(``-pass env:...``) so it never shows up in process listings.
"""

import logging
from typing import Optional

from backstow.errors import CommandError
from backstow.models import Encryption
from .databases import Command, run_command


logger = logging.getLogger(__name__)

PASSPHRASE_VARIABLE = 'BACKSTOW_PASSPHRASE'


def _build_command(encryption: Encryption, input_path: str, output_path: str,
                   decrypt: bool = False) -> Command:
    args = ['openssl', encryption.cipher]
    if decrypt:
        args.append('-d')
    args += [
        '-pbkdf2',
        '-in', input_path,
        '-out', output_path,
        '-pass', f"env:{PASSPHRASE_VARIABLE}"
    ]
    return Command(args, {PASSPHRASE_VARIABLE: encryption.password})


def encrypt_file(encryption: Encryption, input_path: str,
                 timeout: Optional[float] = None) -> str:
    """
    Encrypt a file next to itself.

    Args:
        encryption: Cipher and passphrase to use
        input_path: File to encrypt
        timeout: Seconds to wait for openssl

    Returns:
        Path of the encrypted file (``input_path`` plus ``.enc``)

    Raises:
        CommandError: If openssl fails
    """
    output_path = f"{input_path}{Encryption.extension}"
    command = _build_command(encryption, input_path, output_path)

    logger.info(f"Encrypting {input_path} ({encryption.cipher})")
    run_command(command, timeout=timeout)
    logger.debug(f"Encryption finished: {output_path}")

    return output_path


def decrypt_file(encryption: Encryption, input_path: str,
                 output_path: Optional[str] = None,
                 timeout: Optional[float] = None) -> str:
    """
    Decrypt a file produced by encrypt_file.

    Args:
        encryption: Cipher and passphrase to use
        input_path: Encrypted file, normally ending in ``.enc``
        output_path: Where to write the plaintext (default: input_path
            without the ``.enc`` suffix)
        timeout: Seconds to wait for openssl

    Returns:
        Path of the decrypted file

    Raises:
        CommandError: If openssl fails
    """
    if output_path is None:
        if not input_path.endswith(Encryption.extension):
            raise CommandError(f"Encrypted file has no {Encryption.extension} suffix: {input_path}")
        output_path = input_path[:-len(Encryption.extension)]

    command = _build_command(encryption, input_path, output_path, decrypt=True)

    logger.info(f"Decrypting {input_path} ({encryption.cipher})")
    run_command(command, timeout=timeout)
    logger.debug(f"Decryption finished: {output_path}")

    return output_path
