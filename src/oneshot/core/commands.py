"""Backup and cleanup command strings placed into plan steps."""

import ntpath
import posixpath
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from oneshot.core.plan import Step

REPORT_FILE_NAME = "BackupReport.csv"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def sql_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def sql_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def join_path(destination: str, name: str) -> str:
    """Join a file name onto a destination, keeping its path flavour."""
    if "\\" in destination or _DRIVE_RE.match(destination):
        return ntpath.join(destination, name)
    return posixpath.join(destination, name)


def backup_file_name(database: str, stamp: str) -> str:
    return f"{database}_{stamp}.bak"


def backup_statement(database: str, backup_file: str) -> str:
    """T-SQL full backup of one database to one file."""
    return (
        f"BACKUP DATABASE {sql_identifier(database)} "
        f"TO DISK = {sql_literal(backup_file)} "
        "WITH INIT, CHECKSUM, STATS = 10"
    )


class BackupCommands(ABC):
    """
    Produces the command text of each plan step for one backend.

    ``stamp`` is derived from the schedule moment and makes backup file
    names unique per scheduled run.
    """

    backup_subsystem = "TSQL"
    cleanup_subsystem = "TSQL"

    def __init__(self, stamp: str) -> None:
        self.stamp = stamp

    def backup_file(self, destination: str, database: str) -> str:
        return join_path(destination, backup_file_name(database, self.stamp))

    @abstractmethod
    def backup_command(self, target: str, database: str, destination: str) -> str:
        """Command that backs up ``database`` on ``target`` into ``destination``."""

    @abstractmethod
    def cleanup_command(
        self,
        identity: str,
        target: str,
        report_file: str,
        steps: Sequence["Step"],
    ) -> str:
        """Command run by the terminal step to remove the artifact."""
