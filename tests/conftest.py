"""Shared fakes: an in-memory msdb connection and an in-memory scheduler backend."""

from datetime import datetime
from typing import Any, Callable, Optional

import pytest
from sqlalchemy.exc import OperationalError

from oneshot.core.commands import BackupCommands
from oneshot.core.plan import Plan
from oneshot.scheduler.base import (
    ArtifactHandle,
    PlanSummary,
    RegistrationFailed,
    Scheduler,
    StepSummary,
    TriggerAttachFailed,
)


# ── Fake SQL Server connection ────────────────────────────────────────────────


class _Scalars:
    def __init__(self, values: list[Any]) -> None:
        self._values = values

    def all(self) -> list[Any]:
        return list(self._values)


class FakeResult:
    def __init__(self, rows: Optional[list[dict[str, Any]]] = None) -> None:
        self._rows = rows or []

    def scalar(self) -> Any:
        if not self._rows:
            return None
        return next(iter(self._rows[0].values()))

    def scalars(self) -> _Scalars:
        return _Scalars([next(iter(r.values())) for r in self._rows])

    def mappings(self) -> "FakeResult":
        return self

    def first(self) -> Optional[dict[str, Any]]:
        return self._rows[0] if self._rows else None

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows)


class FakeMsdb:
    """
    Stands in for a SQLAlchemy connection to SQL Server.

    Understands the statements the Agent backend and the database lister
    issue, keeping jobs, steps and schedules in dictionaries.
    """

    def __init__(
        self,
        databases: tuple[str, ...] = ("master", "msdb", "DB1", "DB2", "DB3"),
        fail_on: Optional[Callable[[str, dict[str, Any]], bool]] = None,
    ) -> None:
        self.databases = set(databases)
        self.jobs: dict[str, dict[str, Any]] = {}
        self.schedules: dict[str, dict[str, Any]] = {}
        self.attachments: list[tuple[str, str]] = []
        self.statements: list[tuple[str, dict[str, Any]]] = []
        self.fail_on = fail_on
        self.commits = 0
        self.closed = False

    def calls(self, fragment: str) -> list[dict[str, Any]]:
        return [params for sql, params in self.statements if fragment in sql]

    def commit(self) -> None:
        self.commits += 1

    def close(self) -> None:
        self.closed = True

    def execute(self, clause: Any, params: Optional[dict[str, Any]] = None) -> FakeResult:
        sql = str(clause)
        params = dict(params or {})
        self.statements.append((sql, params))
        if self.fail_on and self.fail_on(sql, params):
            raise OperationalError(sql, params, Exception("simulated failure"))

        if "sys.databases" in sql:
            return FakeResult([{"name": n} for n in sorted(self.databases)])
        if "sp_add_jobstep" in sql:
            self.jobs[params["name"]]["steps"].append(
                {
                    "step_id": params["step_id"],
                    "step_name": params["step_name"],
                    "command": params["command"],
                    "subsystem": params["subsystem"],
                    "database_name": params["database"],
                    "on_success_action": params["success_action"],
                    "on_success_step_id": params["success_step"],
                    "on_fail_action": params["fail_action"],
                    "on_fail_step_id": params["fail_step"],
                }
            )
            return FakeResult()
        if "sp_add_jobserver" in sql:
            return FakeResult()
        if "sp_add_job" in sql:
            self.jobs[params["name"]] = {
                "name": params["name"],
                "description": params["description"],
                "enabled": 1,
                "steps": [],
            }
            return FakeResult()
        if "sp_add_schedule" in sql:
            self.schedules[params["schedule"]] = {
                "schedule_id": len(self.schedules) + 1,
                "name": params["schedule"],
                "enabled": 1,
                "freq_type": 1,
                "active_start_date": params["start_date"],
                "active_start_time": params["start_time"],
            }
            return FakeResult()
        if "sp_attach_schedule" in sql:
            self.attachments.append((params["name"], params["schedule"]))
            return FakeResult()
        if "sp_delete_job" in sql:
            self.jobs.pop(params["name"], None)
            self.attachments = [a for a in self.attachments if a[0] != params["name"]]
            return FakeResult()
        if "FROM msdb.dbo.sysjobsteps" in sql:
            steps = self.jobs.get(params["name"], {}).get("steps", [])
            return FakeResult(sorted(steps, key=lambda s: s["step_id"]))
        if "FROM msdb.dbo.sysjobschedules" in sql and "COUNT(*)" in sql:
            count = self.attachments.count((params["name"], params["schedule"]))
            return FakeResult([{"count": count}])
        if "FROM msdb.dbo.sysjobschedules" in sql:
            rows = [
                {k: v for k, v in self.schedules[s].items() if k != "schedule_id"}
                for job, s in self.attachments
                if job == params["name"]
            ]
            return FakeResult(rows)
        if "FROM msdb.dbo.sysschedules" in sql:
            found = self.schedules.get(params["schedule"])
            return FakeResult([{"schedule_id": found["schedule_id"]}] if found else [])
        if "COUNT(*) FROM msdb.dbo.sysjobs" in sql:
            return FakeResult([{"count": int(params["name"] in self.jobs)}])
        if "FROM msdb.dbo.sysjobs" in sql:
            job = self.jobs.get(params["name"])
            if job is None:
                return FakeResult()
            return FakeResult(
                [{"name": job["name"], "description": job["description"], "enabled": job["enabled"]}]
            )
        raise AssertionError(f"FakeMsdb does not understand: {sql}")


# ── Fake scheduler backend ────────────────────────────────────────────────────


class EchoCommands(BackupCommands):
    """Readable placeholder commands."""

    def backup_command(self, target: str, database: str, destination: str) -> str:
        return f"backup {database} on {target} to {self.backup_file(destination, database)}"

    def cleanup_command(self, identity, target, report_file, steps) -> str:
        return f"export {report_file} and remove {identity}"


class FakeScheduler(Scheduler):
    """Keeps registered plans in memory."""

    kind = "task"
    label = "scheduled task"
    max_name_length = 200

    def __init__(
        self,
        existing: tuple[str, ...] = (),
        fail_create: bool = False,
        fail_attach: bool = False,
    ) -> None:
        self.plans: dict[str, Optional[Plan]] = {name: None for name in existing}
        self.triggers: dict[str, datetime] = {}
        self.fail_create = fail_create
        self.fail_attach = fail_attach
        self.removed: list[str] = []

    def commands(self, stamp: str) -> EchoCommands:
        return EchoCommands(stamp)

    def exists(self, name: str) -> bool:
        return name in self.plans

    def create(self, identity: str, plan: Plan, description: str) -> ArtifactHandle:
        if self.fail_create:
            raise RegistrationFailed("access denied")
        self.plans[identity] = plan
        return ArtifactHandle(kind=self.kind, name=identity)

    def attach_one_time_trigger(self, handle: ArtifactHandle, moment: datetime) -> None:
        if self.fail_attach:
            raise TriggerAttachFailed("trigger rejected")
        self.triggers[handle.name] = moment

    def describe(self, handle: ArtifactHandle) -> PlanSummary:
        plan = self.plans[handle.name]
        steps = []
        if plan is not None:
            steps = [StepSummary(s.name, s.command, s.on_success, s.on_failure) for s in plan.steps]
        return PlanSummary(
            identity=handle.name,
            kind=self.kind,
            description=plan.description if plan else "",
            enabled=True,
            schedule_type="Once" if handle.name in self.triggers else "",
            start=self.triggers.get(handle.name),
            steps=steps,
        )

    def remove(self, handle: ArtifactHandle) -> None:
        self.plans.pop(handle.name)
        self.removed.append(handle.name)


@pytest.fixture
def msdb() -> FakeMsdb:
    return FakeMsdb()


@pytest.fixture
def make_msdb() -> Callable[..., FakeMsdb]:
    return FakeMsdb


@pytest.fixture
def make_scheduler() -> Callable[..., FakeScheduler]:
    return FakeScheduler


@pytest.fixture
def echo_commands() -> EchoCommands:
    return EchoCommands("20261017_0300")
