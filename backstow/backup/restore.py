"""
Restore executor - brings the newest matching archive back onto the host.

Workflow, for every configured archive in order:
1. Locate the newest archive at the destination (downloading it if remote)
2. Decrypt it (if configured)
3. Inflate the bzip2 stream (if configured)
4. Unpack directory entries and re-import database dumps
5. Remove downloaded and intermediate files

An archive without any match is skipped. Locate, decrypt and decompress
failures abort the run; failures of single entries do not.
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from backstow.config import Config
from backstow.errors import BackstowError
from backstow.models import Archive, Compression, Configuration, DestinationKind, Encryption
from .compression import BZ2_EXTENSION, decompress_archive, extract_archive
from .encryption import decrypt_file
from .executor import RunResult, WorkingDirectory
from .storage import create_storage


logger = logging.getLogger(__name__)


class RestoreExecutor:
    """
    Orchestrates the restore workflow for a configuration.
    """

    def __init__(self, configuration: Configuration, command_timeout: Optional[float] = None):
        """
        Initialize restore executor.

        Args:
            configuration: Loaded backup configuration
            command_timeout: Seconds to wait for external programs
                (default: Config.COMMAND_TIMEOUT)
        """
        self.configuration = configuration
        self.command_timeout = command_timeout if command_timeout is not None else Config.COMMAND_TIMEOUT
        self.result = None

    def execute(self) -> RunResult:
        """
        Run the restore for every archive.

        Returns:
            RunResult with status 'success' or 'failed'
        """
        self.result = RunResult()
        self._log(f"Starting restore of {len(self.configuration.archives)} archive(s)")

        try:
            with WorkingDirectory(self.configuration.working_directory):
                for archive in self.configuration.archives:
                    self._restore_archive(archive)

            self.result.status = 'success'
            self._log("Restore completed successfully")

        except BackstowError as e:
            self.result.status = 'failed'
            self.result.error_message = str(e)
            self._log(f"Restore failed: {e}", level=logging.ERROR)

        finally:
            self.result.completed_at = datetime.now(timezone.utc)

        return self.result

    def _restore_archive(self, archive: Archive):
        """Run locate, decrypt and extract for a single archive."""
        self._log(f"Restoring archive: {archive.name}")

        storage = create_storage(archive.destination)
        if storage is None:
            self._log(f"Destination of {archive.name} is 'none', skipping")
            return

        temporary_files = []
        try:
            base_path = storage.fetch_latest(archive)
            if base_path is None:
                self._log(f"No archive found for {archive.name}, skipping", level=logging.WARNING)
                return

            archive_path = f"{base_path}{archive.file_extension}"
            if archive.destination.kind is not DestinationKind.DIRECTORY:
                temporary_files.append(archive_path)

            self._unpack(archive, archive_path, temporary_files)

        finally:
            self._remove_temporary_files(temporary_files)

        self.result.archives_processed.append(archive.name)

    def _unpack(self, archive: Archive, archive_path: str, temporary_files: List[str]):
        """Undo encryption and compression, then dispatch the tar entries."""
        current = archive_path

        # Intermediates go to the working directory, never next to a stored archive
        if archive.encryption is not None:
            decrypted = os.path.basename(current[:-len(Encryption.extension)])
            temporary_files.append(decrypted)
            current = decrypt_file(archive.encryption, current, decrypted, self.command_timeout)

        if archive.compression is Compression.NONE:
            self._log(f"Compression 'none' for {archive.name}, nothing to extract")
            return

        if archive.compression is Compression.TAR_BZ2:
            tar_path = os.path.basename(current[:-len(BZ2_EXTENSION)])
            temporary_files.append(tar_path)
            current = decompress_archive(current, tar_path)

        extracted = extract_archive(
            current,
            archive.directories,
            archive.databases,
            self.command_timeout
        )
        self._log(
            f"Restored {len(extracted.extracted_entries)} entries and "
            f"{len(extracted.restored_databases)} database(s) from {archive_path}"
        )
        for error in extracted.errors:
            self._log(f"Entry failed: {error}", level=logging.ERROR)

    def _remove_temporary_files(self, temporary_files: List[str]):
        for file_path in temporary_files:
            if not os.path.exists(file_path):
                continue
            try:
                os.remove(file_path)
            except OSError as e:
                self._log(
                    f"Temporary file '{file_path}' could not be removed: {e}",
                    level=logging.WARNING
                )

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_restore(configuration: Configuration, command_timeout: Optional[float] = None) -> RunResult:
    """
    Restore every archive in a configuration.

    Args:
        configuration: Loaded backup configuration
        command_timeout: Seconds to wait for external programs

    Returns:
        RunResult with execution results
    """
    executor = RestoreExecutor(configuration, command_timeout)
    return executor.execute()
