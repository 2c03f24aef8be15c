"""SQL Server Agent backend: a multi-step msdb job with a one-time schedule."""

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from jinja2 import TemplateError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from oneshot.core.commands import BackupCommands, backup_statement
from oneshot.core.connection import ConnectError
from oneshot.core.plan import Plan, Step, wiring_errors
from oneshot.core.validator import ValidationContext
from oneshot.scheduler.base import (
    ArtifactHandle,
    HistoryExportFailed,
    PlanSummary,
    RegistrationFailed,
    Scheduler,
    SchedulingError,
    StepSummary,
    StepWiringFailed,
    TriggerAttachFailed,
)
from oneshot.scheduler.render import render_agent_cleanup

logger = logging.getLogger(__name__)

# sp_add_jobstep @on_success_action / @on_fail_action codes
QUIT_SUCCESS = 1
QUIT_FAILURE = 2
NEXT_STEP = 3
GOTO_STEP = 4

_FREQ_TYPES = {
    1: "Once",
    4: "Daily",
    8: "Weekly",
    16: "Monthly",
    32: "MonthlyRelative",
    64: "AgentStart",
    128: "Idle",
}

_ADD_JOB = """
EXEC msdb.dbo.sp_add_job
    @job_name = :name,
    @enabled = 1,
    @description = :description,
    @owner_login_name = :owner
"""

_ADD_STEP = """
EXEC msdb.dbo.sp_add_jobstep
    @job_name = :name,
    @step_id = :step_id,
    @step_name = :step_name,
    @subsystem = :subsystem,
    @command = :command,
    @database_name = :database,
    @on_success_action = :success_action,
    @on_success_step_id = :success_step,
    @on_fail_action = :fail_action,
    @on_fail_step_id = :fail_step
"""

_ADD_JOBSERVER = "EXEC msdb.dbo.sp_add_jobserver @job_name = :name, @server_name = :server"

_JOB_EXISTS = "SELECT COUNT(*) FROM msdb.dbo.sysjobs WHERE name = :name"

_SCHEDULE_ID = "SELECT schedule_id FROM msdb.dbo.sysschedules WHERE name = :schedule"

_ADD_SCHEDULE = """
EXEC msdb.dbo.sp_add_schedule
    @schedule_name = :schedule,
    @enabled = 1,
    @freq_type = 1,
    @active_start_date = :start_date,
    @active_start_time = :start_time
"""

_IS_ATTACHED = """
SELECT COUNT(*)
FROM msdb.dbo.sysjobschedules AS js
JOIN msdb.dbo.sysjobs AS j ON j.job_id = js.job_id
JOIN msdb.dbo.sysschedules AS s ON s.schedule_id = js.schedule_id
WHERE j.name = :name AND s.name = :schedule
"""

_ATTACH_SCHEDULE = "EXEC msdb.dbo.sp_attach_schedule @job_name = :name, @schedule_name = :schedule"

_JOB = "SELECT name, description, enabled FROM msdb.dbo.sysjobs WHERE name = :name"

_STEPS = """
SELECT st.step_id, st.step_name, st.command,
       st.on_success_action, st.on_success_step_id,
       st.on_fail_action, st.on_fail_step_id
FROM msdb.dbo.sysjobsteps AS st
JOIN msdb.dbo.sysjobs AS j ON j.job_id = st.job_id
WHERE j.name = :name
ORDER BY st.step_id
"""

_SCHEDULE = """
SELECT s.name, s.enabled, s.freq_type, s.active_start_date, s.active_start_time
FROM msdb.dbo.sysjobschedules AS js
JOIN msdb.dbo.sysjobs AS j ON j.job_id = js.job_id
JOIN msdb.dbo.sysschedules AS s ON s.schedule_id = js.schedule_id
WHERE j.name = :name
"""

_DELETE_JOB = "EXEC msdb.dbo.sp_delete_job @job_name = :name"


class AgentCommands(BackupCommands):
    """T-SQL backup steps; a PowerShell cleanup step exports history and drops the job."""

    backup_subsystem = "TSQL"
    cleanup_subsystem = "PowerShell"

    def backup_command(self, target: str, database: str, destination: str) -> str:
        return backup_statement(database, self.backup_file(destination, database))

    def cleanup_command(
        self,
        identity: str,
        target: str,
        report_file: str,
        steps: Sequence[Step],
    ) -> str:
        try:
            return render_agent_cleanup(identity, target, report_file, steps)
        except TemplateError as exc:
            raise HistoryExportFailed(f"cannot render history export for '{identity}': {exc}") from exc


def schedule_name_for(moment: datetime) -> str:
    """Name of the one-time schedule for ``moment``; equal moments share a schedule."""
    return f"Once_{moment:%Y%m%d_%H%M%S}"


def _encode_edge(index: int, target: Optional[int], quit_action: int) -> tuple[int, int]:
    if target is None:
        return quit_action, 0
    if target == index + 1:
        return NEXT_STEP, 0
    return GOTO_STEP, target + 1


def _decode_edge(index: int, action: int, step_id: int) -> Optional[int]:
    if action == NEXT_STEP:
        return index + 1
    if action == GOTO_STEP:
        return step_id - 1
    return None


class AgentScheduler(Scheduler):
    """
    Registers plans as SQL Server Agent jobs in msdb.

    Uses the connection cached on the run's ValidationContext.
    """

    kind = "agent"
    label = "SQL Agent job"
    max_name_length = 128

    def __init__(
        self,
        context: ValidationContext,
        server_name: str = "(local)",
        owner_login: Optional[str] = None,
    ) -> None:
        self.context = context
        self.server_name = server_name
        self.owner_login = owner_login

    def _conn(self) -> Any:
        try:
            return self.context.connection_for()
        except ConnectError as exc:
            raise SchedulingError(str(exc)) from exc

    def commands(self, stamp: str) -> AgentCommands:
        return AgentCommands(stamp)

    def exists(self, name: str) -> bool:
        try:
            count = self._conn().execute(text(_JOB_EXISTS), {"name": name}).scalar()
        except SQLAlchemyError as exc:
            raise SchedulingError(f"cannot query msdb.dbo.sysjobs: {exc}") from exc
        return bool(count)

    def create(self, identity: str, plan: Plan, description: str) -> ArtifactHandle:
        errors = wiring_errors(plan)
        if errors:
            raise StepWiringFailed("; ".join(errors))

        conn = self._conn()
        try:
            conn.execute(
                text(_ADD_JOB),
                {"name": identity, "description": description, "owner": self.owner_login},
            )
            conn.commit()
        except SQLAlchemyError as exc:
            raise RegistrationFailed(f"sp_add_job failed for '{identity}': {exc}") from exc
        logger.info("Created SQL Agent job '%s'", identity)

        for index, step in enumerate(plan.steps):
            success_action, success_step = _encode_edge(index, step.on_success, QUIT_SUCCESS)
            fail_action, fail_step = _encode_edge(index, step.on_failure, QUIT_FAILURE)
            try:
                conn.execute(
                    text(_ADD_STEP),
                    {
                        "name": identity,
                        "step_id": index + 1,
                        "step_name": step.name,
                        "subsystem": step.subsystem,
                        "command": step.command,
                        "database": "master" if step.subsystem == "TSQL" else None,
                        "success_action": success_action,
                        "success_step": success_step,
                        "fail_action": fail_action,
                        "fail_step": fail_step,
                    },
                )
                conn.commit()
            except SQLAlchemyError as exc:
                raise StepWiringFailed(
                    f"sp_add_jobstep failed for step {index + 1} ('{step.name}'): {exc}"
                ) from exc
            logger.debug("Added step %d '%s' to job '%s'", index + 1, step.name, identity)

        try:
            conn.execute(text(_ADD_JOBSERVER), {"name": identity, "server": self.server_name})
            conn.commit()
        except SQLAlchemyError as exc:
            raise RegistrationFailed(f"sp_add_jobserver failed for '{identity}': {exc}") from exc
        return ArtifactHandle(kind=self.kind, name=identity, location=plan.target)

    def attach_one_time_trigger(self, handle: ArtifactHandle, moment: datetime) -> None:
        schedule = schedule_name_for(moment)
        conn = self._conn()
        try:
            schedule_id = conn.execute(text(_SCHEDULE_ID), {"schedule": schedule}).scalar()
            if schedule_id is None:
                conn.execute(
                    text(_ADD_SCHEDULE),
                    {
                        "schedule": schedule,
                        "start_date": int(moment.strftime("%Y%m%d")),
                        "start_time": int(moment.strftime("%H%M%S")),
                    },
                )
                logger.info("Created one-time schedule '%s'", schedule)
            else:
                logger.info("Reusing existing schedule '%s'", schedule)

            attached = conn.execute(
                text(_IS_ATTACHED), {"name": handle.name, "schedule": schedule}
            ).scalar()
            if not attached:
                conn.execute(text(_ATTACH_SCHEDULE), {"name": handle.name, "schedule": schedule})
            conn.commit()
        except SQLAlchemyError as exc:
            raise TriggerAttachFailed(
                f"cannot attach schedule '{schedule}' to '{handle.name}': {exc}"
            ) from exc

    def describe(self, handle: ArtifactHandle) -> PlanSummary:
        conn = self._conn()
        params = {"name": handle.name}
        try:
            job = conn.execute(text(_JOB), params).mappings().first()
            steps = conn.execute(text(_STEPS), params).mappings().all()
            schedule = conn.execute(text(_SCHEDULE), params).mappings().first()
        except SQLAlchemyError as exc:
            raise SchedulingError(f"cannot read job '{handle.name}' from msdb: {exc}") from exc
        if job is None:
            raise SchedulingError(f"SQL Agent job '{handle.name}' not found")

        summary = PlanSummary(
            identity=job["name"],
            kind=self.kind,
            description=job["description"] or "",
            enabled=bool(job["enabled"]),
            location=self.context.target or "",
        )
        for row in steps:
            index = row["step_id"] - 1
            summary.steps.append(
                StepSummary(
                    name=row["step_name"],
                    command=row["command"],
                    on_success=_decode_edge(index, row["on_success_action"], row["on_success_step_id"]),
                    on_failure=_decode_edge(index, row["on_fail_action"], row["on_fail_step_id"]),
                )
            )
        if schedule is not None:
            summary.schedule_name = schedule["name"]
            summary.schedule_type = _FREQ_TYPES.get(schedule["freq_type"], str(schedule["freq_type"]))
            summary.enabled = summary.enabled and bool(schedule["enabled"])
            summary.start = datetime.strptime(
                f"{schedule['active_start_date']:08d}{schedule['active_start_time']:06d}",
                "%Y%m%d%H%M%S",
            )
        return summary

    def remove(self, handle: ArtifactHandle) -> None:
        conn = self._conn()
        try:
            conn.execute(text(_DELETE_JOB), {"name": handle.name})
            conn.commit()
        except SQLAlchemyError as exc:
            raise SchedulingError(f"sp_delete_job failed for '{handle.name}': {exc}") from exc
        logger.info("Removed SQL Agent job '%s'", handle.name)
