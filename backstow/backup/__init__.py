"""
Backup module for backstow.

This module handles the core backup and restore functionality including:
- Archive name templates
- Tar construction, bzip2 compression and extraction
- Database dumps and imports
- openssl encryption
- Storage (local directory, S3 and SSH)
- Execution orchestration
"""

from .executor import BackupExecutor, RunResult
from .restore import RestoreExecutor
from .compression import create_tar_archive, compress_archive, extract_archive
from .storage import LocalStorage, S3Storage, SSHStorage, create_storage
from .progress import ProgressReporter, ProgressStats

__all__ = [
    'BackupExecutor',
    'RunResult',
    'RestoreExecutor',
    'create_tar_archive',
    'compress_archive',
    'extract_archive',
    'LocalStorage',
    'S3Storage',
    'SSHStorage',
    'create_storage',
    'ProgressReporter',
    'ProgressStats'
]
