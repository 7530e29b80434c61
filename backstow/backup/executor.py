"""
Backup executor - orchestrates the complete backup workflow.

Workflow, for every configured archive in order:
1. Resolve the archive name template
2. Create the tar archive (directories and database dumps)
3. Compress it with bzip2 (if configured)
4. Encrypt the result (if configured)
5. Hand the final files to the destination
6. Remove intermediate files

Any archive or command failure aborts the whole run. Uploads to S3 or SSH
that fail are logged and skipped by the storage handlers.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from backstow.config import Config
from backstow.errors import ArchiveError, BackstowError
from backstow.models import Archive, Compression, Configuration
from .compression import compress_archive, create_tar_archive
from .encryption import encrypt_file
from .naming import resolve_archive_name
from .storage import create_storage


logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of a backup or restore run."""
    status: str = 'running'
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    archives_processed: List[str] = field(default_factory=list)
    stored_files: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'


class WorkingDirectory:
    """Create and enter the working directory, returning to the old one on exit."""

    def __init__(self, path: str):
        self.path = path or '.'
        self._previous = None

    def __enter__(self):
        self._previous = os.getcwd()
        try:
            os.makedirs(self.path, exist_ok=True)
            os.chdir(self.path)
        except OSError as e:
            raise ArchiveError(f"Unable to use working directory {self.path}: {e}")
        return self

    def __exit__(self, exc_type, exc, tb):
        os.chdir(self._previous)
        return False


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a configuration.
    """

    def __init__(self, configuration: Configuration, command_timeout: Optional[float] = None,
                 now: Optional[datetime] = None):
        """
        Initialize backup executor.

        Args:
            configuration: Loaded backup configuration
            command_timeout: Seconds to wait for external programs
                (default: Config.COMMAND_TIMEOUT)
            now: Date used for name templates (default: current UTC time)
        """
        self.configuration = configuration
        self.command_timeout = command_timeout if command_timeout is not None else Config.COMMAND_TIMEOUT
        self.now = now
        self.result = None

    def execute(self) -> RunResult:
        """
        Run the backup for every archive.

        Returns:
            RunResult with status 'success' or 'failed'
        """
        self.result = RunResult()
        self._log(f"Starting backup of {len(self.configuration.archives)} archive(s)")

        try:
            with WorkingDirectory(self.configuration.working_directory):
                for archive in self.configuration.archives:
                    self._backup_archive(archive)

            self.result.status = 'success'
            self._log("Backup completed successfully")

        except BackstowError as e:
            self.result.status = 'failed'
            self.result.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            self.result.completed_at = datetime.now(timezone.utc)

        return self.result

    def _backup_archive(self, archive: Archive):
        """Run the pipeline for a single archive."""
        archive_name = resolve_archive_name(archive.name, self.now)
        self._log(f"Creating archive: {archive_name}")

        files_to_store = []
        temporary_files = []

        try:
            if archive.compression is not Compression.NONE:
                tar_path = create_tar_archive(
                    archive_name,
                    archive.directories,
                    archive.databases,
                    self.command_timeout
                )

                if archive.compression is Compression.TAR_BZ2:
                    temporary_files.append(tar_path)
                    files_to_store.append(compress_archive(tar_path))
                else:
                    files_to_store.append(tar_path)
            else:
                self._log(f"Compression 'none' for {archive_name}, nothing to archive")

            if archive.encryption is not None:
                encrypted_files = []
                for file_path in files_to_store:
                    temporary_files.append(file_path)
                    encrypted_files.append(
                        encrypt_file(archive.encryption, file_path, self.command_timeout)
                    )
                files_to_store = encrypted_files

            storage = create_storage(archive.destination)
            if storage is None:
                self._log(f"Destination of {archive_name} is 'none', keeping {files_to_store}")
            elif files_to_store:
                stored = storage.store(files_to_store)
                self.result.stored_files.extend(stored)
                self._log(f"Stored {len(stored)} of {len(files_to_store)} file(s) for {archive_name}")

        except BackstowError:
            self._remove_temporary_files(temporary_files, strict=False)
            raise

        self._remove_temporary_files(temporary_files)
        self.result.archives_processed.append(archive_name)

    def _remove_temporary_files(self, temporary_files: List[str], strict: bool = True):
        for file_path in temporary_files:
            if not os.path.exists(file_path):
                continue
            try:
                os.remove(file_path)
            except OSError as e:
                if not strict:
                    self._log(f"Warning: Failed to remove temporary file {file_path}: {e}", level=logging.WARNING)
                    continue
                raise ArchiveError(f"Unable to remove temporary file: '{file_path}': {e}")

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


def execute_backup(configuration: Configuration, command_timeout: Optional[float] = None) -> RunResult:
    """
    Run a backup of every archive in a configuration.

    Args:
        configuration: Loaded backup configuration
        command_timeout: Seconds to wait for external programs

    Returns:
        RunResult with execution results
    """
    executor = BackupExecutor(configuration, command_timeout)
    return executor.execute()
