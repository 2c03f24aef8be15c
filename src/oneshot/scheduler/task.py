"""Windows Task Scheduler backend: a standalone script registered as a one-off task."""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from oneshot import __version__
from oneshot.core.commands import BackupCommands, backup_statement
from oneshot.core.connection import ConnectionSettings
from oneshot.core.plan import Plan, Step, wiring_errors
from oneshot.core.shell import ShellError, ps_quote, run_powershell
from oneshot.scheduler.base import (
    ArtifactHandle,
    PlanSummary,
    RegistrationFailed,
    Scheduler,
    SchedulingError,
    StepSummary,
    StepWiringFailed,
    TriggerAttachFailed,
)
from oneshot.scheduler.render import extract_plan, render_script

logger = logging.getLogger(__name__)

_SERVICE_ACCOUNTS = {"SYSTEM", "LOCAL SERVICE", "NETWORK SERVICE"}
_TRIGGER_TYPES = {"MSFT_TaskTimeTrigger": "Once"}


def _cmd_quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class TaskCommands(BackupCommands):
    """
    sqlcmd backup commands; cleanup unregisters the task.

    With a configured SQL login the backups log in with ``-U``/``-P``,
    otherwise with integrated security as the task principal.
    """

    backup_subsystem = "CmdExec"
    cleanup_subsystem = "CmdExec"

    def __init__(
        self,
        stamp: str,
        sqlcmd: str = "sqlcmd",
        connection: Optional[ConnectionSettings] = None,
    ) -> None:
        super().__init__(stamp)
        self.sqlcmd = sqlcmd
        self.connection = connection or ConnectionSettings()

    def _login_args(self) -> str:
        conn = self.connection
        if conn.username:
            args = f"-U {_cmd_quote(conn.username)}"
            if conn.password:
                args += f" -P {_cmd_quote(conn.password)}"
        else:
            args = "-E"
        if conn.trust_server_certificate:
            args += " -C"
        return args

    def backup_command(self, target: str, database: str, destination: str) -> str:
        statement = backup_statement(database, self.backup_file(destination, database))
        return f'{self.sqlcmd} -S {target} {self._login_args()} -b -Q "{statement}"'

    def cleanup_command(
        self,
        identity: str,
        target: str,
        report_file: str,
        steps: Sequence[Step],
    ) -> str:
        return f'schtasks /Delete /TN "{identity}" /F'


class TaskScheduler(Scheduler):
    """
    Registers plans with Windows Task Scheduler.

    The plan is rendered into a Python script stored under ``script_dir``;
    the task runs it with ``python``. The script writes the report, removes
    the task and deletes itself once the plan completes.
    """

    kind = "task"
    label = "scheduled task"
    max_name_length = 200

    def __init__(
        self,
        script_dir: Path,
        python: str = sys.executable,
        powershell: str = "powershell.exe",
        run_as: str = "SYSTEM",
        execution_time_limit_hours: int = 72,
        sqlcmd: str = "sqlcmd",
        connection: Optional[ConnectionSettings] = None,
    ) -> None:
        self.script_dir = Path(script_dir)
        self.python = python
        self.powershell = powershell
        self.run_as = run_as
        self.execution_time_limit_hours = execution_time_limit_hours
        self.sqlcmd = sqlcmd
        self.connection = connection

    def _run(self, script: str) -> tuple[int, str, str]:
        try:
            return run_powershell(script, powershell=self.powershell)
        except ShellError as exc:
            raise SchedulingError(str(exc)) from exc

    def script_path(self, name: str) -> Path:
        return self.script_dir / f"{name}.py"

    def commands(self, stamp: str) -> TaskCommands:
        return TaskCommands(stamp, sqlcmd=self.sqlcmd, connection=self.connection)

    def exists(self, name: str) -> bool:
        rc, out, err = self._run(
            f"Get-ScheduledTask -TaskName {ps_quote(name)} -ErrorAction SilentlyContinue"
            " | Select-Object -ExpandProperty TaskName"
        )
        if rc != 0:
            raise SchedulingError(f"cannot query Task Scheduler: {err.strip()}")
        return bool(out.strip())

    def create(self, identity: str, plan: Plan, description: str) -> ArtifactHandle:
        errors = wiring_errors(plan)
        if errors:
            raise StepWiringFailed("; ".join(errors))

        script = self.script_path(identity)
        text = render_script(
            plan,
            {"version": __version__, "generated_at": datetime.now().isoformat(timespec="seconds")},
        )
        try:
            self.script_dir.mkdir(parents=True, exist_ok=True)
            script.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise RegistrationFailed(f"cannot write {script}: {exc}") from exc
        logger.info("Wrote task script %s", script)

        logon = "ServiceAccount" if self.run_as.upper() in _SERVICE_ACCOUNTS else "S4U"
        argument = f'"{script}"'
        rc, out, err = self._run(
            "\n".join(
                [
                    "$ErrorActionPreference = 'Stop'",
                    f"$action = New-ScheduledTaskAction -Execute {ps_quote(self.python)}"
                    f" -Argument {ps_quote(argument)}",
                    f"$principal = New-ScheduledTaskPrincipal -UserId {ps_quote(self.run_as)}"
                    f" -LogonType {logon} -RunLevel Highest",
                    "$settings = New-ScheduledTaskSettingsSet -StartWhenAvailable"
                    f" -ExecutionTimeLimit (New-TimeSpan -Hours {int(self.execution_time_limit_hours)})",
                    f"Register-ScheduledTask -TaskName {ps_quote(identity)}"
                    f" -Description {ps_quote(description)}"
                    " -Action $action -Principal $principal -Settings $settings | Out-Null",
                ]
            )
        )
        if rc != 0:
            script.unlink(missing_ok=True)
            raise RegistrationFailed(
                f"Register-ScheduledTask failed for '{identity}': {(err or out).strip()}"
            )
        logger.info("Registered scheduled task '%s'", identity)
        return ArtifactHandle(kind=self.kind, name=identity, location=str(script))

    def attach_one_time_trigger(self, handle: ArtifactHandle, moment: datetime) -> None:
        at = moment.strftime("%Y-%m-%d %H:%M:%S")
        rc, out, err = self._run(
            "\n".join(
                [
                    "$ErrorActionPreference = 'Stop'",
                    f"$at = [datetime]::ParseExact({ps_quote(at)}, 'yyyy-MM-dd HH:mm:ss',"
                    " [Globalization.CultureInfo]::InvariantCulture)",
                    "$trigger = New-ScheduledTaskTrigger -Once -At $at",
                    f"Set-ScheduledTask -TaskName {ps_quote(handle.name)} -Trigger $trigger | Out-Null",
                ]
            )
        )
        if rc != 0:
            raise TriggerAttachFailed(
                f"cannot set trigger on '{handle.name}': {(err or out).strip()}"
            )
        logger.info("Task '%s' will run once at %s", handle.name, at)

    def _query(self, name: str) -> dict[str, Any]:
        rc, out, err = self._run(
            "\n".join(
                [
                    "$ErrorActionPreference = 'Stop'",
                    f"$task = Get-ScheduledTask -TaskName {ps_quote(name)}",
                    "$trigger = $task.Triggers | Select-Object -First 1",
                    "$triggerType = ''",
                    "$start = ''",
                    "if ($trigger) {",
                    "    $triggerType = $trigger.CimClass.CimClassName",
                    "    $start = $trigger.StartBoundary",
                    "}",
                    "[pscustomobject]@{",
                    "    TaskName = $task.TaskName",
                    "    Description = $task.Description",
                    "    Enabled = [bool]$task.Settings.Enabled",
                    "    Arguments = $task.Actions[0].Arguments",
                    "    TriggerType = $triggerType",
                    "    StartBoundary = $start",
                    "} | ConvertTo-Json",
                ]
            )
        )
        if rc != 0:
            raise SchedulingError(f"cannot read scheduled task '{name}': {(err or out).strip()}")
        try:
            return json.loads(out)
        except ValueError as exc:
            raise SchedulingError(f"unexpected Get-ScheduledTask output: {out!r}") from exc

    def describe(self, handle: ArtifactHandle) -> PlanSummary:
        data = self._query(handle.name)
        script = Path((data.get("Arguments") or "").strip().strip('"'))
        try:
            plan = extract_plan(script.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SchedulingError(f"cannot read plan from {script}: {exc}") from exc

        start: Optional[datetime] = None
        raw_start = data.get("StartBoundary") or ""
        if raw_start:
            # fromisoformat only accepts a trailing Z from 3.11 on
            if raw_start.endswith("Z"):
                raw_start = raw_start[:-1] + "+00:00"
            start = datetime.fromisoformat(raw_start)

        trigger_type = data.get("TriggerType") or ""
        return PlanSummary(
            identity=data.get("TaskName", handle.name),
            kind=self.kind,
            description=data.get("Description") or "",
            enabled=bool(data.get("Enabled")),
            schedule_type=_TRIGGER_TYPES.get(trigger_type, trigger_type),
            start=start,
            steps=[
                StepSummary(s.name, s.command, on_success=s.on_success, on_failure=s.on_failure)
                for s in plan.steps
            ],
            location=str(script),
        )

    def remove(self, handle: ArtifactHandle) -> None:
        rc, out, err = self._run(
            f"Unregister-ScheduledTask -TaskName {ps_quote(handle.name)} -Confirm:$false"
            " -ErrorAction Stop"
        )
        if rc != 0:
            raise SchedulingError(f"cannot remove task '{handle.name}': {(err or out).strip()}")
        self.script_path(handle.name).unlink(missing_ok=True)
        logger.info("Removed scheduled task '%s'", handle.name)
