"""
Loader for the XML backup settings file.

Example::

    <backup-configuration working-directory="/var/tmp/backstow">
      <databases>
        <database id="mysql-local" kind="mysql" username="root" password="secret"/>
      </databases>
      <destinations>
        <destination id="nas" kind="directory" path="/mnt/backups"/>
        <destination id="cloud" kind="s3" bucket="my-backups" region="eu-central-1"/>
        <destination id="box" kind="ssh" server="backup.example.com"
                     username="backup" password="secret" path="archives"/>
      </destinations>
      <encryptions>
        <encryption id="default" cipher="aes-256-cbc" password="passphrase"/>
      </encryptions>
      <archives>
        <archive name="daily-{date:weekday}" compression="tar.bz2"
                 destination="nas" encryption="default">
          <directories>
            <directory name="/srv/app" user="www-data" group="www-data"/>
          </directories>
          <databases db-id="mysql-local">
            <database name="app"/>
          </databases>
        </archive>
      </archives>
    </backup-configuration>

All ids are checked for uniqueness and every reference is resolved here,
so the backup and restore code can rely on a consistent Configuration.
"""

import os
import re
import xml.etree.ElementTree as ET
from datetime import timedelta
from typing import Dict, List, Optional

from backstow.errors import ConfigurationError
from backstow.models import (
    Archive, Compression, Configuration, Credential, Database, DatabaseKind,
    Destination, DestinationKind, Directory, Encryption
)


S3_REGIONS = {
    'ap-northeast-1', 'ap-northeast-2', 'ap-south-1', 'ap-southeast-1',
    'ap-southeast-2', 'ca-central-1', 'cn-north-1', 'cn-northwest-1',
    'eu-central-1', 'eu-west-1', 'eu-west-2', 'eu-west-3', 'sa-east-1',
    'us-east-1', 'us-east-2', 'us-gov-west-1', 'us-west-1', 'us-west-2',
}

# Regions that are really S3 compatible services: name -> (region, endpoint)
CUSTOM_S3_REGIONS = {
    'storj-eu1': ('eu1', 'https://gateway.storjshare.io'),
}

TRUE_VALUES = {'1', 'true', 'yes', 'on', 'enabled'}

DURATION_UNITS = {
    's': 1, 'sec': 1, 'secs': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'mins': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hr': 3600, 'hrs': 3600, 'hour': 3600, 'hours': 3600,
    'd': 86400, 'day': 86400, 'days': 86400,
    'w': 604800, 'week': 604800, 'weeks': 604800,
}

DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)\s*([a-z]+)')


def parse_duration(value: str) -> Optional[timedelta]:
    """
    Parse durations like ``30d``, ``12 hours`` or ``1w 2d``.

    A bare number is taken as seconds. Returns None if the value can't be
    parsed.
    """
    text = value.strip().lower()
    if not text:
        return None

    if re.fullmatch(r'\d+(?:\.\d+)?', text):
        return timedelta(seconds=float(text))

    seconds = 0.0
    position = 0
    for match in DURATION_PART.finditer(text):
        if text[position:match.start()].strip():
            return None
        unit = DURATION_UNITS.get(match.group(2))
        if unit is None:
            return None
        seconds += float(match.group(1)) * unit
        position = match.end()

    if position == 0 or text[position:].strip():
        return None

    return timedelta(seconds=seconds)


def _enum_value(enum_class, value: str, what: str):
    try:
        return enum_class(value)
    except ValueError:
        raise ConfigurationError(f"invalid {what} value '{value}'.")


def _parse_database(element: ET.Element) -> Database:
    kind = _enum_value(DatabaseKind, element.get('kind', 'mysql'), 'database kind')
    return Database(
        id=element.get('id', ''),
        kind=kind,
        credential=Credential(
            username=element.get('username', ''),
            password=element.get('password', '')
        )
    )


def _parse_destination(element: ET.Element) -> Destination:
    kind = _enum_value(DestinationKind, element.get('kind', 'none'), 'destination kind')

    region = element.get('region', 'eu-central-1')
    endpoint = None
    if region in CUSTOM_S3_REGIONS:
        region, endpoint = CUSTOM_S3_REGIONS[region]
    elif region not in S3_REGIONS:
        raise ConfigurationError(f"invalid destination region value '{region}'.")

    max_archive_age = None
    if element.get('max-archive-age'):
        max_archive_age = parse_duration(element.get('max-archive-age'))

    return Destination(
        id=element.get('id', ''),
        kind=kind,
        path=element.get('path', ''),
        s3_bucket=element.get('bucket', ''),
        s3_region=region,
        s3_endpoint=endpoint,
        server=element.get('server', ''),
        username=element.get('username', ''),
        password=element.get('password', ''),
        max_archive_age=max_archive_age
    )


def _parse_archive(element: ET.Element, databases: Dict[str, Database],
                   destinations: Dict[str, Destination],
                   encryptions: Dict[str, Encryption]) -> Archive:
    name = element.get('name', '')
    if not name:
        raise ConfigurationError("archive without name in configuration")

    compression = _enum_value(Compression, element.get('compression', 'none'), 'compression')

    destination_id = element.get('destination')
    if destination_id is None:
        destination = Destination(id='', kind=DestinationKind.NONE)
    elif destination_id in destinations:
        destination = destinations[destination_id]
    else:
        raise ConfigurationError(
            f"destination '{destination_id}' not found in configuration.destinations"
        )

    encryption = None
    encryption_id = element.get('encryption')
    if encryption_id is not None:
        if encryption_id not in encryptions:
            raise ConfigurationError(
                f"encryption '{encryption_id}' not found in configuration.encryptions"
            )
        encryption = encryptions[encryption_id]

    directories = []
    for directory in element.findall('directories/directory'):
        if directory.get('name'):
            directories.append(Directory(
                name=directory.get('name'),
                user=directory.get('user'),
                group=directory.get('group')
            ))

    archive_databases = []
    for group in element.findall('databases'):
        group_db_id = group.get('db-id', '')
        for entry in group.findall('database'):
            db_id = entry.get('db-id', group_db_id)
            db_name = entry.get('name', '')

            if not db_id:
                raise ConfigurationError("no db-id was given in configuration")
            if not db_name:
                raise ConfigurationError("no db-name was given in configuration")
            if db_id not in databases:
                raise ConfigurationError(f"no database with id '{db_id}' found")

            template = databases[db_id]
            archive_databases.append(Database(
                id=template.id,
                kind=template.kind,
                name=db_name,
                name_is_regex=entry.get('name-is-regex', '').lower() in TRUE_VALUES,
                credential=template.credential
            ))

    return Archive(
        name=name,
        destination=destination,
        compression=compression,
        encryption=encryption,
        directories=tuple(directories),
        databases=tuple(archive_databases)
    )


def parse_configuration(root: ET.Element) -> Configuration:
    """
    Build a Configuration from a parsed ``<backup-configuration>`` element.

    Raises:
        ConfigurationError: If the document is invalid
    """
    if root.tag != 'backup-configuration':
        raise ConfigurationError(
            f"unexpected root element '{root.tag}', expected 'backup-configuration'"
        )

    databases = {}
    for element in root.findall('databases/database'):
        database = _parse_database(element)
        if not database.id:
            continue
        if database.id in databases:
            raise ConfigurationError(f"the database-id '{database.id}' already exists")
        databases[database.id] = database

    destinations = {}
    for element in root.findall('destinations/destination'):
        destination = _parse_destination(element)
        if destination.kind is DestinationKind.NONE or not destination.id:
            continue
        if destination.id in destinations:
            raise ConfigurationError(f"the destination-id '{destination.id}' already exists")
        if destination.kind is DestinationKind.S3 and not destination.s3_bucket:
            raise ConfigurationError("the destination-bucket must be set for kind: s3")
        if destination.kind is DestinationKind.SSH and not destination.server:
            raise ConfigurationError("the destination-server must be set for kind: ssh")
        if destination.kind is DestinationKind.DIRECTORY and not destination.path:
            raise ConfigurationError("the destination-path must be set for kind: directory")
        destinations[destination.id] = destination

    encryptions = {}
    for element in root.findall('encryptions/encryption'):
        encryption = Encryption(
            id=element.get('id', ''),
            cipher=element.get('cipher', ''),
            password=element.get('password', '')
        )
        # Incomplete entries are skipped, like unnamed databases
        if encryption.id and encryption.cipher and encryption.password:
            if encryption.id in encryptions:
                raise ConfigurationError(f"the encryption-id '{encryption.id}' already exists")
            encryptions[encryption.id] = encryption

    archives: List[Archive] = [
        _parse_archive(element, databases, destinations, encryptions)
        for element in root.findall('archives/archive')
    ]

    return Configuration(
        working_directory=root.get('working-directory') or '.',
        archives=tuple(archives),
        databases=tuple(databases.values()),
        destinations=tuple(destinations.values()),
        encryptions=tuple(encryptions.values())
    )


def load_configuration(filename: str) -> Configuration:
    """
    Load and validate a backup settings file.

    Args:
        filename: Path of the XML file; ``~`` is expanded

    Returns:
        Validated Configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = os.path.expanduser(filename)

    try:
        tree = ET.parse(path)
    except FileNotFoundError:
        raise ConfigurationError(f"backup configuration file '{filename}' does not exist.")
    except OSError as e:
        raise ConfigurationError(f"unable to open backup configuration file '{filename}': {e}")
    except ET.ParseError as e:
        raise ConfigurationError(f"XML error in '{filename}': {e}")

    return parse_configuration(tree.getroot())
