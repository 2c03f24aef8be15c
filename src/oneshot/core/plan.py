"""Execution plan: one backup step per database plus a terminal cleanup step."""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

from oneshot.core.commands import REPORT_FILE_NAME, BackupCommands, join_path

logger = logging.getLogger(__name__)

CLEANUP_STEP_NAME = "Cleanup"
# sp_add_jobstep @step_name is a sysname
MAX_STEP_NAME_LENGTH = 128


@dataclass(frozen=True)
class Step:
    """
    One step of a plan.

    ``on_success`` / ``on_failure`` are indexes of the step to continue with;
    None ends the run.
    """

    name: str
    command: str
    on_success: Optional[int]
    on_failure: Optional[int]
    subsystem: str = "TSQL"
    database: Optional[str] = None
    backup_file: Optional[str] = None

    @property
    def is_cleanup(self) -> bool:
        return self.database is None


@dataclass(frozen=True)
class Plan:
    """An immutable, fully wired plan ready to be registered."""

    identity: str
    description: str
    target: str
    destination: str
    report_file: str
    steps: tuple[Step, ...]

    @property
    def cleanup_index(self) -> int:
        return len(self.steps) - 1

    @property
    def cleanup(self) -> Step:
        return self.steps[-1]

    @property
    def backup_steps(self) -> tuple[Step, ...]:
        return self.steps[:-1]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["steps"] = [asdict(step) for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        return cls(
            identity=data["identity"],
            description=data.get("description", ""),
            target=data["target"],
            destination=data["destination"],
            report_file=data["report_file"],
            steps=tuple(Step(**raw) for raw in data["steps"]),
        )


def _step_name(database: str, number: int) -> str:
    suffix = f" ({number})" if number > 1 else ""
    room = MAX_STEP_NAME_LENGTH - len("Backup ") - len(suffix)
    return f"Backup {database[:room]}{suffix}"


def _unique_step_names(databases: Sequence[str]) -> list[str]:
    """Step names, numbered on repeats and cut to fit the step name limit."""
    taken: set[str] = set()
    names: list[str] = []
    for db in databases:
        number = 1
        name = _step_name(db, number)
        while name in taken:
            number += 1
            name = _step_name(db, number)
        taken.add(name)
        names.append(name)
    return names


def build_plan(
    target: str,
    databases: Sequence[str],
    destination: str,
    identity: str,
    description: str,
    commands: BackupCommands,
) -> Plan:
    """
    Build the plan for a one-off backup of ``databases``.

    Steps run in input order. A successful step continues with the next one,
    the last backup step continues with cleanup; any failure jumps straight to
    cleanup, skipping the remaining backups. Cleanup ends the run either way.

    Args:
        target: Validated instance name
        databases: Validated database names (duplicates yield duplicate steps)
        destination: Validated backup directory
        identity: Name of the task/job to register
        description: Free text stored with the artifact
        commands: Backend-specific command source

    Returns:
        The immutable Plan

    Raises:
        ValueError: If no databases are given
    """
    if not databases:
        raise ValueError("a plan needs at least one database")

    cleanup_index = len(databases)
    backup_steps: list[Step] = []
    for index, (database, name) in enumerate(zip(databases, _unique_step_names(databases))):
        backup_steps.append(
            Step(
                name=name,
                command=commands.backup_command(target, database, destination),
                on_success=index + 1,
                on_failure=cleanup_index,
                subsystem=commands.backup_subsystem,
                database=database,
                backup_file=commands.backup_file(destination, database),
            )
        )

    report_file = join_path(destination, REPORT_FILE_NAME)
    cleanup = Step(
        name=CLEANUP_STEP_NAME,
        command=commands.cleanup_command(identity, target, report_file, backup_steps),
        on_success=None,
        on_failure=None,
        subsystem=commands.cleanup_subsystem,
    )
    plan = Plan(
        identity=identity,
        description=description,
        target=target,
        destination=destination,
        report_file=report_file,
        steps=tuple(backup_steps) + (cleanup,),
    )
    logger.info("Built plan '%s' with %d backup step(s)", identity, len(backup_steps))
    return plan


def wiring_errors(plan: Plan) -> list[str]:
    """
    Check the plan's edges.

    Returns:
        List of problems (empty list = correctly wired)
    """
    errors: list[str] = []
    if not plan.steps or not plan.cleanup.is_cleanup:
        return ["plan does not end with a cleanup step"]

    cleanup_steps = [s for s in plan.steps if s.is_cleanup]
    if len(cleanup_steps) != 1:
        errors.append(f"expected exactly one cleanup step, found {len(cleanup_steps)}")

    for index, step in enumerate(plan.backup_steps):
        if step.on_success != index + 1:
            errors.append(f"step '{step.name}': on-success must continue with step {index + 1}")
        if step.on_failure != plan.cleanup_index:
            errors.append(f"step '{step.name}': on-failure must jump to cleanup")

    if plan.cleanup.on_success is not None or plan.cleanup.on_failure is not None:
        errors.append("cleanup step must end the run")
    return errors
