"""Scheduling run: validate inputs, build the plan, register it, read it back."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from oneshot.core.plan import Plan, build_plan
from oneshot.core.validator import (
    ValidationContext,
    artifact_name_field,
    database_list_field,
    instance_field,
    moment_field,
    path_field,
    plain_text_field,
    prompt_until_valid,
)
from oneshot.scheduler.base import PlanSummary, Scheduler, SchedulingError

logger = logging.getLogger(__name__)


@dataclass
class ScheduleRequest:
    """
    Values supplied up front (CLI options). Missing ones are prompted for;
    ``defaults`` are offered on the first prompt of each field.
    """

    instance: Optional[str] = None
    databases: Optional[str] = None
    destination: Optional[str] = None
    name: Optional[str] = None
    at: Optional[str] = None
    description: Optional[str] = None
    backend: str = "task"
    defaults: Optional[dict[str, str]] = None


@dataclass
class ScheduleOutcome:
    plan: Plan
    moment: datetime
    summary: PlanSummary


def run_schedule(
    request: ScheduleRequest,
    scheduler_factory: Callable[[str, ValidationContext], Scheduler],
    ctx: ValidationContext,
    ask: Callable[[str, Optional[str]], str],
    echo: Callable[[str], None],
) -> ScheduleOutcome:
    """
    Run the whole scheduling flow.

    Validation order is fixed: instance, databases, destination, name, moment.
    Validation failures re-prompt; backend failures are fatal.

    Args:
        request: Pre-supplied values and defaults
        scheduler_factory: Builds the backend named by ``request.backend``
        ctx: Validation context of this run (owns the connection)
        ask: Prompt collaborator
        echo: Output for validation messages

    Returns:
        The plan, the moment and the summary read back from the backend

    Raises:
        SchedulingError: On registration or trigger failures
        ConfirmationDeclined: If the operator refuses a past moment
    """
    defaults = request.defaults or {}

    def _field(kind, initial: Optional[str], key: str, fallback: Optional[str] = None):
        default = defaults.get(key, fallback)
        return prompt_until_valid(kind, ctx, ask, echo, initial=initial, default=default)

    target = _field(instance_field(), request.instance, "instance")
    databases = _field(database_list_field(), request.databases, "databases")
    destination = _field(path_field(), request.destination, "destination")

    scheduler = scheduler_factory(request.backend, ctx)
    identity = _field(artifact_name_field(scheduler), request.name, "name")
    moment = _field(moment_field(), request.at, "at")
    if request.description is not None:
        description = request.description
    else:
        description = _field(plain_text_field(), None, "description", fallback="")

    commands = scheduler.commands(moment.strftime("%Y%m%d_%H%M"))
    plan = build_plan(target, databases, destination, identity, description, commands)

    try:
        handle = scheduler.create(identity, plan, description)
        scheduler.attach_one_time_trigger(handle, moment)
    except SchedulingError:
        _report_partial_registration(scheduler, identity)
        raise

    summary = scheduler.describe(handle)
    logger.info("Scheduled %s '%s' for %s", scheduler.label, identity, moment)
    return ScheduleOutcome(plan=plan, moment=moment, summary=summary)


def _report_partial_registration(scheduler: Scheduler, identity: str) -> None:
    try:
        leftover = scheduler.exists(identity)
    except SchedulingError as exc:
        logger.warning("Could not check for a partially registered '%s': %s", identity, exc)
        return
    if leftover:
        logger.warning(
            "%s '%s' was partially registered and is still present; "
            "remove it with: oneshot remove --backend %s \"%s\"",
            scheduler.label,
            identity,
            scheduler.kind,
            identity,
        )
