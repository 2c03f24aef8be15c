"""
Interactive input validation for the scheduling run.

Every value the operator supplies goes through :func:`validate` with a
:class:`FieldKind` describing the syntactic rule and the extended check
(connection, database existence, destination, name uniqueness, moment).
:func:`prompt_until_valid` wraps it in the re-prompt loop: recoverable
failures are echoed and the operator is asked again, without the rejected
value being offered back.

State shared between checks (the live connection opened by the instance
check) lives on an explicit :class:`ValidationContext`.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from oneshot.core import paths
from oneshot.core.connection import ConnectError, list_databases
from oneshot.scheduler.base import Scheduler

logger = logging.getLogger(__name__)

MOMENT_FORMAT = "%Y-%m-%d %H:%M"

_INSTANCE_RE = re.compile(r"^[A-Za-z0-9.\-]+$")
_DATABASE_RE = re.compile(r"^[A-Za-z0-9_$]+$")


# ── Error taxonomy ────────────────────────────────────────────────────────────


class ValidationError(Exception):
    """Base class for recoverable validation failures (operator is re-prompted)."""

    def __str__(self) -> str:
        return f"{type(self).__name__}: {super().__str__()}"


class SyntaxInvalid(ValidationError):
    """The value does not match the field's syntactic rule."""


class ConnectionFailed(ValidationError):
    """The instance could not be reached."""


class EntityNotFound(ValidationError):
    """One or more requested databases do not exist on the instance."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = list(names)
        super().__init__(", ".join(dict.fromkeys(self.names)))


class PathUnavailable(ValidationError):
    """The destination does not exist and could not be created."""


class NameCollision(ValidationError):
    """An artifact with the requested name is already registered."""


class ConfirmationDeclined(Exception):
    """The operator refused to continue with a schedule moment in the past."""


# ── Context ───────────────────────────────────────────────────────────────────


def _decline(_message: str) -> bool:
    return False


@dataclass
class ValidationContext:
    """
    Per-run validation state.

    Owns the connection opened by the instance check so later checks (database
    existence, Agent job names) and the Agent backend reuse it instead of
    reconnecting.
    """

    connector: Callable[[str], Any]
    database_lister: Callable[[Any], set[str]] = list_databases
    warn: Callable[[str], None] = logger.warning
    confirm: Callable[[str], bool] = _decline
    clock: Callable[[], datetime] = datetime.now
    target: Optional[str] = None
    connection: Optional[Any] = None

    def connection_for(self, target: Optional[str] = None) -> Any:
        """
        Return the cached connection for ``target``, opening it if needed.

        Raises:
            ConnectError: If no target is known or the connection attempt fails
        """
        target = target or self.target
        if not target:
            raise ConnectError("no instance has been validated yet")
        if self.connection is not None and target == self.target:
            return self.connection
        self.close()
        self.connection = self.connector(target)
        self.target = target
        return self.connection

    def close(self) -> None:
        if self.connection is not None:
            logger.debug("Closing connection to %s", self.target)
            self.connection.close()
            self.connection = None


# ── Field kinds ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldKind:
    """
    A kind of operator input.

    ``predicate`` is the syntactic rule (applied to every element when
    ``multi`` is set); ``check`` is the extended check run afterwards, which
    may also convert the value.
    """

    name: str
    label: str
    predicate: Callable[[str], bool]
    hint: str
    multi: bool = False
    check: Optional[Callable[[Any, ValidationContext], Any]] = field(default=None, compare=False)


def split_list(raw: str) -> list[str]:
    """Split a comma-separated list, trimming items and dropping empty ones."""
    return [item.strip() for item in raw.split(",") if item.strip()]


def _check_instance(value: str, ctx: ValidationContext) -> str:
    try:
        ctx.connection_for(value)
    except ConnectError as exc:
        raise ConnectionFailed(f"cannot connect to {value}: {exc}") from exc
    return value


def _check_databases(value: list[str], ctx: ValidationContext) -> list[str]:
    try:
        conn = ctx.connection_for()
    except ConnectError as exc:
        raise ConnectionFailed(str(exc)) from exc
    try:
        existing = {name.lower() for name in ctx.database_lister(conn)}
    except SQLAlchemyError as exc:
        # next attempt reconnects to the same target
        ctx.close()
        raise ConnectionFailed(f"cannot list databases on {ctx.target}: {exc}") from exc
    missing = [name for name in value if name.lower() not in existing]
    if missing:
        raise EntityNotFound(missing)
    return value


def _check_path(value: str, ctx: ValidationContext) -> str:
    if paths.is_network_path(value):
        ctx.warn(
            f"{value} is a network path: the account running the backup "
            "must have write access to it"
        )
    if not paths.path_exists(value):
        try:
            paths.create_directory(value)
        except OSError as exc:
            raise PathUnavailable(f"cannot create {value}: {exc}") from exc
    elif not paths.is_directory(value):
        raise PathUnavailable(f"{value} exists but is not a directory")
    return value


def _parses_moment(value: str) -> bool:
    try:
        datetime.strptime(value, MOMENT_FORMAT)
    except ValueError:
        return False
    return True


def _check_moment(value: str, ctx: ValidationContext) -> datetime:
    moment = datetime.strptime(value, MOMENT_FORMAT)
    if moment <= ctx.clock():
        ctx.warn(f"{value} is not in the future; the task will not run by itself at that time")
        if not ctx.confirm("Schedule it anyway?"):
            raise ConfirmationDeclined(f"schedule moment {value} is in the past")
    return moment


def instance_field() -> FieldKind:
    return FieldKind(
        name="instance",
        label="SQL Server instance",
        predicate=lambda v: bool(_INSTANCE_RE.match(v)),
        hint="letters, digits, '.' and '-' only",
        check=_check_instance,
    )


def database_list_field() -> FieldKind:
    return FieldKind(
        name="databases",
        label="Databases (comma separated)",
        predicate=lambda v: bool(_DATABASE_RE.match(v)),
        hint="letters, digits, '_' and '$' only",
        multi=True,
        check=_check_databases,
    )


def path_field() -> FieldKind:
    return FieldKind(
        name="destination",
        label="Backup destination",
        predicate=paths.is_valid_path_syntax,
        hint='a path without <>"|?* or stray colons',
        check=_check_path,
    )


def artifact_name_field(scheduler: Scheduler) -> FieldKind:
    """Name of the task/job, checked against the backend's rule and registry."""

    def _predicate(value: str) -> bool:
        return bool(scheduler.name_pattern.match(value)) and len(value) <= scheduler.max_name_length

    def _check(value: str, ctx: ValidationContext) -> str:
        if scheduler.exists(value):
            raise NameCollision(f"{scheduler.label} '{value}' already exists")
        return value

    return FieldKind(
        name="identity",
        label=f"{scheduler.label.capitalize()} name",
        predicate=_predicate,
        hint=(
            "letters, digits, spaces, '_', '.' and '-', "
            f"at most {scheduler.max_name_length} characters"
        ),
        check=_check,
    )


def moment_field() -> FieldKind:
    return FieldKind(
        name="moment",
        label="Run at (YYYY-MM-DD HH:MM)",
        predicate=_parses_moment,
        hint="expected YYYY-MM-DD HH:MM",
        check=_check_moment,
    )


def plain_text_field(label: str = "Description") -> FieldKind:
    return FieldKind(name="text", label=label, predicate=lambda v: True, hint="")


# ── Entry points ──────────────────────────────────────────────────────────────


def validate(kind: FieldKind, raw: str, ctx: ValidationContext) -> Any:
    """
    Validate one submission for a field.

    A multi-value submission is accepted or rejected as a whole.

    Raises:
        ValidationError: On any recoverable failure
        ConfirmationDeclined: If the operator refuses a past moment
    """
    value: Any
    if kind.multi:
        items = split_list(raw)
        if not items:
            raise SyntaxInvalid("at least one value is required")
        bad = [item for item in items if not kind.predicate(item)]
        if bad:
            raise SyntaxInvalid(f"{', '.join(bad)} ({kind.hint})")
        value = items
    else:
        value = raw.strip()
        if not kind.predicate(value):
            raise SyntaxInvalid(f"'{value}' ({kind.hint})")

    if kind.check is not None:
        value = kind.check(value, ctx)
    return value


def prompt_until_valid(
    kind: FieldKind,
    ctx: ValidationContext,
    ask: Callable[[str, Optional[str]], str],
    echo: Callable[[str], None],
    initial: Optional[str] = None,
    default: Optional[str] = None,
) -> Any:
    """
    Ask for a value until it validates.

    Args:
        kind: Field being asked for
        ctx: Validation context of this run
        ask: Prompt collaborator, called as ``ask(label, default)``
        echo: Where error messages go
        initial: Pre-supplied value (e.g. a CLI option) tried before prompting
        default: Default offered on the first prompt only
    """
    candidate = initial
    offered = default
    while True:
        raw = candidate if candidate is not None else ask(kind.label, offered)
        candidate = None
        try:
            return validate(kind, raw, ctx)
        except ValidationError as exc:
            logger.debug("Rejected %s %r: %s", kind.name, raw, exc)
            echo(f"✗ {exc}")
            offered = None
