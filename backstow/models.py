"""
Configuration entities for backup and restore runs.

Everything here is produced once by the settings loader and never mutated
afterwards; all dataclasses are frozen and collections are tuples.
"""

import grp
import pwd
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional, Tuple


class Compression(Enum):
    """Archive pipeline selected for an archive."""
    NONE = 'none'
    TAR = 'tar'
    TAR_BZ2 = 'tar.bz2'

    @property
    def extension(self) -> str:
        return {
            Compression.NONE: '',
            Compression.TAR: '.tar',
            Compression.TAR_BZ2: '.tar.bz2',
        }[self]


class DatabaseKind(Enum):
    MONGODB = 'mongodb'
    MYSQL = 'mysql'
    POSTGRESQL = 'postgresql'

    @property
    def extension(self) -> str:
        if self is DatabaseKind.MONGODB:
            return '.bson'
        return '.sql'


class DestinationKind(Enum):
    NONE = 'none'
    DIRECTORY = 'directory'
    S3 = 's3'
    SSH = 'ssh'


@dataclass(frozen=True)
class Credential:
    username: str = ''
    password: str = ''


@dataclass(frozen=True)
class Directory:
    """A directory to archive, and the ownership to apply on restore."""
    name: str
    user: Optional[str] = None
    group: Optional[str] = None

    def get_uid(self) -> Optional[int]:
        """Resolve the owning user name, or None if unset or unknown."""
        if not self.user:
            return None
        try:
            return pwd.getpwnam(self.user).pw_uid
        except KeyError:
            return None

    def get_gid(self) -> Optional[int]:
        """Resolve the owning group name, or None if unset or unknown."""
        if not self.group:
            return None
        try:
            return grp.getgrnam(self.group).gr_gid
        except KeyError:
            return None


@dataclass(frozen=True)
class Database:
    id: str
    kind: DatabaseKind
    name: str = ''
    name_is_regex: bool = False
    credential: Credential = field(default_factory=Credential)

    @property
    def dump_filename(self) -> str:
        return f"{self.name}{self.kind.extension}"


@dataclass(frozen=True)
class Destination:
    id: str
    kind: DestinationKind
    path: str = ''
    s3_bucket: str = ''
    s3_region: str = 'eu-central-1'
    s3_endpoint: Optional[str] = None
    server: str = ''
    username: str = ''
    password: str = ''
    # Parsed but not enforced; there is no pruning of old archives
    max_archive_age: Optional[timedelta] = None


@dataclass(frozen=True)
class Encryption:
    id: str
    cipher: str
    password: str = field(repr=False, default='')

    extension = '.enc'


@dataclass(frozen=True)
class Archive:
    name: str
    destination: Destination
    compression: Compression = Compression.NONE
    encryption: Optional[Encryption] = None
    directories: Tuple[Directory, ...] = ()
    databases: Tuple[Database, ...] = ()

    @property
    def file_extension(self) -> str:
        """Suffix chain of the final stored file, e.g. ``.tar.bz2.enc``."""
        extension = self.compression.extension
        if self.encryption is not None:
            extension += Encryption.extension
        return extension


@dataclass(frozen=True)
class Configuration:
    working_directory: str = '.'
    archives: Tuple[Archive, ...] = ()
    databases: Tuple[Database, ...] = ()
    destinations: Tuple[Destination, ...] = ()
    encryptions: Tuple[Encryption, ...] = ()
