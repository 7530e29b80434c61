"""
Database dump and restore commands.

Builds the command lines for mysqldump/mysql, pg_dump/psql and
mongodump/mongorestore, and runs them. Dumps always go to stdout and
imports always read from stdin.
"""

import logging
import os
import subprocess
from typing import IO, Dict, List, NamedTuple, Optional

from backstow.errors import CommandError
from backstow.models import Database, DatabaseKind


logger = logging.getLogger(__name__)


class Command(NamedTuple):
    args: List[str]
    env: Optional[Dict[str, str]] = None

    def display(self) -> str:
        """Command line with mysql password arguments masked, for log messages."""
        if not self.args or self.args[0] not in ('mysql', 'mysqldump'):
            return ' '.join(self.args)
        return ' '.join('-p***' if arg.startswith('-p') and len(arg) > 2 else arg
                        for arg in self.args)


def run_command(command: Command, stdin: Optional[IO] = None,
                stdout: Optional[IO] = None, timeout: Optional[float] = None,
                check: bool = True) -> subprocess.CompletedProcess:
    """
    Run an external program and wait for it.

    Args:
        command: Program and arguments, plus extra environment variables
        stdin: File object to feed to the program
        stdout: File object receiving the program output
        timeout: Seconds to wait before killing the program (None = forever)
        check: Raise CommandError on a non-zero exit code

    Returns:
        CompletedProcess of the finished program

    Raises:
        CommandError: If the program can not be started, times out,
            or (with check) exits non-zero
    """
    env = None
    if command.env:
        env = dict(os.environ)
        env.update(command.env)

    try:
        result = subprocess.run(
            command.args,
            stdin=stdin,
            stdout=stdout,
            stderr=subprocess.PIPE,
            env=env,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise CommandError(
            f"Command timed out after {timeout}s: {command.display()}",
            command=command.args,
            timed_out=True
        )
    except OSError as e:
        raise CommandError(
            f"Failed to execute {command.display()}: {e}",
            command=command.args
        )

    if check and result.returncode != 0:
        stderr = (result.stderr or b'').decode(errors='replace').strip()
        message = f"Command exited with code {result.returncode}: {command.display()}"
        if stderr:
            message += f" ({stderr})"
        raise CommandError(message, command=command.args, returncode=result.returncode)

    return result


def _mysql_auth(database: Database) -> List[str]:
    args = []
    credential = database.credential
    if credential.username:
        args += ['-u', credential.username]
        if credential.password:
            args.append(f"-p{credential.password}")
    return args


def _pg_auth(database: Database) -> Command:
    args = []
    env = {}
    credential = database.credential
    if credential.username:
        args.append(f"--username={credential.username}")
        if credential.password:
            env['PGPASSWORD'] = credential.password
    args.append('--host=localhost')
    return Command(args, env or None)


def build_dump_command(database: Database) -> Command:
    """Command writing a dump of the database to stdout."""
    if database.kind is DatabaseKind.MONGODB:
        args = ['mongodump', '--archive']
        if database.name != '*':
            args.append(f"--db={database.name}")
        return Command(args)

    if database.kind is DatabaseKind.MYSQL:
        args = ['mysqldump'] + _mysql_auth(database) + ['--databases']
        # Name patterns are not passed on to mysqldump
        if not database.name_is_regex:
            args.append(database.name)
        return Command(args)

    auth = _pg_auth(database)
    return Command(['pg_dump'] + auth.args + [f"--dbname={database.name}"], auth.env)


def build_create_command(database: Database) -> Optional[Command]:
    """Command creating the database if missing, or None when not needed."""
    if database.kind is DatabaseKind.MYSQL:
        return Command(['mysql'] + _mysql_auth(database) + [
            '-e', f"CREATE DATABASE IF NOT EXISTS `{database.name}`"
        ])

    if database.kind is DatabaseKind.POSTGRESQL:
        auth = _pg_auth(database)
        return Command(['createdb'] + auth.args + [database.name], auth.env)

    # mongorestore --drop recreates collections on its own
    return None


def build_delete_command(database: Database) -> Optional[Command]:
    """Command dropping the database if present, or None when not needed."""
    if database.kind is DatabaseKind.MYSQL:
        return Command(['mysql'] + _mysql_auth(database) + [
            '-e', f"DROP DATABASE IF EXISTS `{database.name}`"
        ])

    if database.kind is DatabaseKind.POSTGRESQL:
        auth = _pg_auth(database)
        return Command(['dropdb', '--if-exists'] + auth.args + [database.name], auth.env)

    return None


def build_import_command(database: Database) -> Command:
    """Command reading a dump from stdin into the database."""
    if database.kind is DatabaseKind.MONGODB:
        return Command(['mongorestore', '--archive', '--drop', '--preserveUUID'])

    if database.kind is DatabaseKind.MYSQL:
        return Command(['mysql'] + _mysql_auth(database) + [database.name])

    auth = _pg_auth(database)
    return Command(['psql', '--quiet'] + auth.args + [f"--dbname={database.name}"], auth.env)


def dump_database(database: Database, output: IO, timeout: Optional[float] = None) -> int:
    """
    Dump a database into an open file.

    Returns:
        Exit code of the dump program; non-zero codes are not raised

    Raises:
        CommandError: If the dump program can not be started or times out
    """
    command = build_dump_command(database)
    logger.info(f"Dumping {database.kind.value} database: {database.name}")
    result = run_command(command, stdout=output, timeout=timeout, check=False)
    if result.returncode != 0:
        stderr = (result.stderr or b'').decode(errors='replace').strip()
        if stderr:
            logger.warning(f"{command.args[0]} failed for {database.name}: {stderr}")
    return result.returncode


def delete_database(database: Database, timeout: Optional[float] = None):
    command = build_delete_command(database)
    if command is not None:
        run_command(command, timeout=timeout)


def create_database(database: Database, timeout: Optional[float] = None):
    command = build_create_command(database)
    if command is not None:
        run_command(command, timeout=timeout)


def import_database(database: Database, dump_path: str, timeout: Optional[float] = None):
    """Feed a dump file into the database's import program."""
    command = build_import_command(database)
    with open(dump_path, 'rb') as dump_file:
        run_command(command, stdin=dump_file, timeout=timeout)


def restore_database(database: Database, dump_path: str, timeout: Optional[float] = None):
    """
    Replace a database with the contents of a dump file.

    Drops the database, creates it again and imports the dump.

    Raises:
        CommandError: If any of the steps fails
        OSError: If the dump file can not be read
    """
    delete_database(database, timeout)
    create_database(database, timeout)
    import_database(database, dump_path, timeout)
