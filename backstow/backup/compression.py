"""
Archive construction and extraction.

Backups build ``<name>.tar`` from directories and database dumps and may
compress it into ``<name>.tar.bz2``. Restores inflate the bzip2 stream
again and hand every tar entry to the directory or database it belongs to.
"""

import bz2
import logging
import os
import tarfile
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from backstow.config import Config
from backstow.errors import ArchiveError, CommandError
from backstow.models import Database, Directory
from .databases import dump_database, restore_database


logger = logging.getLogger(__name__)

BZ2_EXTENSION = '.bz2'
TAR_EXTENSION = '.tar'


def directory_archive_name(path: str) -> str:
    """
    Name under which a directory is stored in the archive.

    Only the last path component is kept, so ``/data/app`` is stored as
    ``app/...``.
    """
    return os.path.basename(path.rstrip('/'))


def remove_partial_file(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial file {path}: {e}")


def create_tar_archive(
    archive_name: str,
    directories: Sequence[Directory],
    databases: Sequence[Database],
    timeout: Optional[float] = None
) -> str:
    """
    Create ``<archive_name>.tar`` from directories and database dumps.

    Each database is dumped to ``<name>.sql`` (``.bson`` for MongoDB) in the
    current directory. The dump is added to the archive and removed only when
    the dump program exits with code 0; otherwise the partial dump is left
    behind and the database is not archived.

    Args:
        archive_name: Archive name without extension
        directories: Directories to add recursively
        databases: Databases to dump and add
        timeout: Seconds to wait for each dump program

    Returns:
        Path of the created tar file

    Raises:
        ArchiveError: If the archive can not be written
        CommandError: If a dump program can not be started or times out
    """
    tar_path = f"{archive_name}{TAR_EXTENSION}"

    try:
        tar_file = open(tar_path, 'wb')
    except FileExistsError:
        raise ArchiveError(f"Unable to create file: {tar_path} => already exists")
    except PermissionError:
        raise ArchiveError(f"Unable to create file: {tar_path} => permission denied")
    except OSError as e:
        raise ArchiveError(f"Unable to create file: {tar_path}: {e}")

    try:
        with tar_file, tarfile.open(fileobj=tar_file, mode='w') as tar:
            for directory in directories:
                arcname = directory_archive_name(directory.name)
                logger.info(f"Adding directory {directory.name} as {arcname}")
                try:
                    tar.add(directory.name, arcname=arcname, recursive=True)
                except OSError as e:
                    raise ArchiveError(
                        f"Unable to append directory {directory.name} to {tar_path}: {e}"
                    )

            for database in databases:
                _add_database_dump(tar, tar_path, database, timeout)

    except (ArchiveError, CommandError):
        remove_partial_file(tar_path)
        raise
    except (OSError, tarfile.TarError) as e:
        remove_partial_file(tar_path)
        raise ArchiveError(f"Failed to write {tar_path}: {e}")

    return tar_path


def _add_database_dump(tar: tarfile.TarFile, tar_path: str, database: Database,
                       timeout: Optional[float]):
    dump_path = database.dump_filename

    try:
        with open(dump_path, 'wb') as dump_file:
            returncode = dump_database(database, dump_file, timeout)
    except OSError as e:
        raise ArchiveError(f"Unable to create dump file {dump_path}: {e}")

    if returncode != 0:
        logger.warning(
            f"Dump of {database.name} exited with code {returncode}, "
            f"not adding {dump_path} to {tar_path}"
        )
        return

    logger.info(f"Adding dump {dump_path}")
    try:
        tar.add(dump_path, arcname=dump_path)
    except OSError as e:
        raise ArchiveError(f"Unable to append dump file {dump_path} to {tar_path}: {e}")

    try:
        os.remove(dump_path)
    except OSError as e:
        raise ArchiveError(f"Unable to remove dump file {dump_path}: {e}")


def compress_archive(tar_path: str, buffer_size: int = Config.BUFFER_SIZE) -> str:
    """
    Compress a tar file into ``<tar_path>.bz2``.

    The source file is left in place; removing it is up to the caller.

    Args:
        tar_path: Path of the tar file
        buffer_size: Bytes read and written per step

    Returns:
        Path of the compressed file

    Raises:
        ArchiveError: If reading or writing fails
    """
    bz2_path = f"{tar_path}{BZ2_EXTENSION}"
    logger.info(f"Compressing {tar_path}")

    try:
        source = open(tar_path, 'rb')
    except OSError as e:
        raise ArchiveError(f"Unable to open tar file: {tar_path}: {e}")

    with source:
        try:
            target = bz2.BZ2File(bz2_path, 'wb', compresslevel=9)
        except OSError as e:
            raise ArchiveError(f"Unable to create file: {bz2_path}: {e}")

        try:
            with target:
                while True:
                    try:
                        chunk = source.read(buffer_size)
                    except OSError as e:
                        raise ArchiveError(f"Unable to read tar file: {tar_path}: {e}")

                    if not chunk:
                        break

                    try:
                        target.write(chunk)
                    except OSError as e:
                        raise ArchiveError(f"Unable to write bz2 file: {bz2_path}: {e}")
        except ArchiveError:
            remove_partial_file(bz2_path)
            raise
        except OSError as e:
            remove_partial_file(bz2_path)
            raise ArchiveError(f"Unable to finish bz2 stream: {bz2_path}: {e}")

    logger.info(f"Compression completed: {bz2_path}")
    return bz2_path


def decompress_archive(bz2_path: str, output_path: Optional[str] = None,
                       buffer_size: int = Config.BUFFER_SIZE) -> str:
    """
    Inflate a ``.tar.bz2`` file back into a tar file.

    Args:
        bz2_path: Compressed file
        output_path: Tar file to write (default: bz2_path without ``.bz2``)
        buffer_size: Bytes read and written per step

    Returns:
        Path of the tar file

    Raises:
        ArchiveError: If the stream is unreadable or the output can't be written
    """
    if output_path is None:
        if bz2_path.endswith(BZ2_EXTENSION):
            output_path = bz2_path[:-len(BZ2_EXTENSION)]
        else:
            output_path = f"{bz2_path}{TAR_EXTENSION}"

    logger.info(f"Extracting bz2 file: {bz2_path}")

    try:
        source = bz2.BZ2File(bz2_path, 'rb')
    except OSError as e:
        raise ArchiveError(f"Unable to open bz2 file: {bz2_path}: {e}")

    with source:
        try:
            target = open(output_path, 'wb')
        except OSError as e:
            raise ArchiveError(f"Unable to create tar file: {output_path}: {e}")

        with target:
            while True:
                try:
                    chunk = source.read(buffer_size)
                except (OSError, EOFError) as e:
                    raise ArchiveError(f"Unable to read bz2 file: {bz2_path}: {e}")

                if not chunk:
                    break

                try:
                    target.write(chunk)
                except OSError as e:
                    raise ArchiveError(f"Unable to write tar file: {output_path}: {e}")

    return output_path


@dataclass
class ExtractResult:
    """What happened to the entries of an extracted archive."""
    extracted_entries: List[str] = field(default_factory=list)
    restored_databases: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _match_directory(entry_name: str, directories: Sequence[Directory]) -> Optional[Directory]:
    for directory in directories:
        leaf = directory_archive_name(directory.name)
        if not leaf:
            continue
        if entry_name == leaf or entry_name.startswith(f"{leaf}/"):
            return directory
    return None


def extract_archive(
    tar_path: str,
    directories: Sequence[Directory],
    databases: Sequence[Database],
    timeout: Optional[float] = None
) -> ExtractResult:
    """
    Restore the entries of a tar file.

    Entries under a configured directory's leaf name are unpacked below that
    directory's parent and chowned to its user/group. An entry named like a
    database dump replaces that database. Everything else is ignored.
    Failures of single entries are logged and skipped.

    Args:
        tar_path: Tar file to read
        directories: Directories that may be restored
        databases: Databases that may be restored
        timeout: Seconds to wait for each database command

    Returns:
        ExtractResult describing what was restored

    Raises:
        ArchiveError: If the tar file can not be opened or read
    """
    result = ExtractResult()
    logger.info(f"Extracting tar file: {tar_path}")

    try:
        tar = tarfile.open(tar_path, 'r:')
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Unable to open tar file: {tar_path}: {e}")

    try:
        with tar:
            for member in tar:
                directory = _match_directory(member.name, directories)
                if directory is not None:
                    _extract_directory_entry(tar, member, directory, result)
                    continue

                for database in databases:
                    if member.name == database.dump_filename:
                        _restore_database_entry(tar, member, database, timeout, result)
    except tarfile.TarError as e:
        raise ArchiveError(f"Unable to read tar file: {tar_path}: {e}")

    logger.info(
        f"Extraction completed: {len(result.extracted_entries)} entries, "
        f"{len(result.restored_databases)} databases, {len(result.errors)} errors"
    )
    return result


def _extract_directory_entry(tar: tarfile.TarFile, member: tarfile.TarInfo,
                             directory: Directory, result: ExtractResult):
    parent = os.path.dirname(directory.name.rstrip('/')) or '.'
    destination = os.path.join(parent, member.name)

    try:
        tar.extract(member, path=parent, filter='tar')
    except (OSError, tarfile.TarError) as e:
        message = f"Unable to extract {member.name} to {parent}: {e}"
        logger.error(message)
        result.errors.append(message)
        return

    result.extracted_entries.append(destination)

    uid = directory.get_uid()
    gid = directory.get_gid()
    if uid is not None or gid is not None:
        try:
            os.chown(
                destination,
                uid if uid is not None else -1,
                gid if gid is not None else -1,
                follow_symlinks=False
            )
        except OSError as e:
            logger.debug(f"Ignoring chown failure for {destination}: {e}")


def _restore_database_entry(tar: tarfile.TarFile, member: tarfile.TarInfo,
                            database: Database, timeout: Optional[float],
                            result: ExtractResult):
    dump_path = database.dump_filename

    try:
        tar.extract(member, path='.', filter='tar')
    except (OSError, tarfile.TarError) as e:
        message = f"Unable to extract dump {member.name}: {e}"
        logger.error(message)
        result.errors.append(message)
        return

    try:
        logger.info(f"Restoring {database.kind.value} database: {database.name}")
        restore_database(database, dump_path, timeout)
        result.restored_databases.append(database.name)
    except (CommandError, OSError) as e:
        message = f"Database restore of {database.name} failed: {e}"
        logger.error(message)
        result.errors.append(message)
    finally:
        try:
            os.remove(dump_path)
        except OSError as e:
            logger.warning(f"Unable to remove temporary dump file {dump_path}: {e}")
