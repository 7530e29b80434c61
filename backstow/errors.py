"""
Exception hierarchy for backstow.

Every failure the backup and restore pipelines raise derives from
BackstowError so the command-line front end can report it uniformly.
"""

from typing import Optional, Sequence


class BackstowError(Exception):
    """Base class for all backstow errors."""
    pass


class ConfigurationError(BackstowError):
    """Raised when the backup settings are invalid or reference unknown ids."""
    pass


class ArchiveError(BackstowError):
    """Raised when creating, reading or removing an archive file fails."""
    pass


class CommandError(BackstowError):
    """Raised when an external program cannot be spawned, fails or times out."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None,
                 returncode: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.timed_out = timed_out


class StorageError(BackstowError):
    """Raised when storing an archive in a local destination fails."""
    pass


class TransferError(BackstowError):
    """Raised when talking to a remote destination (S3, SSH) fails."""
    pass
