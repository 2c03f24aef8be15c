"""Tests for the end-to-end scheduling flow with an in-memory backend."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest

from oneshot.core.connection import ConnectError
from oneshot.core.orchestrator import ScheduleRequest, run_schedule
from oneshot.core.validator import ConfirmationDeclined, ValidationContext
from oneshot.scheduler.base import RegistrationFailed, TriggerAttachFailed

NOW = datetime(2026, 10, 16, 12, 0)


class Prompter:
    """Scripted answers keyed by prompt label; records what was asked."""

    def __init__(self, answers: Optional[dict[str, list[str]]] = None) -> None:
        self.answers = {k: list(v) for k, v in (answers or {}).items()}
        self.asked: list[tuple[str, Optional[str]]] = []

    def __call__(self, label: str, default: Optional[str]) -> str:
        self.asked.append((label, default))
        queue = self.answers.get(label)
        if not queue:
            raise AssertionError(f"unexpected prompt: {label}")
        return queue.pop(0)


def _ctx(msdb, confirm=lambda msg: False) -> ValidationContext:
    def connector(target: str):
        if target != "SQLHOST1":
            raise ConnectError("no route to host")
        return msdb

    return ValidationContext(connector=connector, clock=lambda: NOW, confirm=confirm)


def _request(tmp_path: Path, **overrides) -> ScheduleRequest:
    values = dict(
        instance="SQLHOST1",
        databases="DB1, DB2",
        destination=str(tmp_path / "backups"),
        name="OneOff",
        at="2026-10-17 03:00",
        description="before upgrade",
    )
    values.update(overrides)
    return ScheduleRequest(**values)


class TestRunSchedule:
    def test_all_values_supplied(self, msdb, make_scheduler, tmp_path: Path) -> None:
        scheduler = make_scheduler()
        echoed: list[str] = []
        outcome = run_schedule(
            _request(tmp_path), lambda kind, ctx: scheduler, _ctx(msdb), Prompter(), echoed.append
        )

        assert echoed == []
        assert outcome.moment == datetime(2026, 10, 17, 3, 0)
        assert [s.name for s in outcome.plan.steps] == ["Backup DB1", "Backup DB2", "Cleanup"]
        assert outcome.plan.steps[0].backup_file.endswith("DB1_20261017_0300.bak")
        assert scheduler.plans["OneOff"] == outcome.plan
        assert scheduler.triggers["OneOff"] == outcome.moment
        assert outcome.summary.schedule_type == "Once"
        assert (tmp_path / "backups").is_dir()

    def test_prompts_for_missing_values(self, msdb, make_scheduler, tmp_path: Path) -> None:
        prompter = Prompter(
            {
                "SQL Server instance": ["SQLHOST1"],
                "Databases (comma separated)": ["DB1"],
                "Scheduled task name": ["OneOff"],
                "Description": [""],
            }
        )
        request = _request(tmp_path, instance=None, databases=None, name=None, description=None)
        outcome = run_schedule(request, lambda kind, ctx: make_scheduler(), _ctx(msdb), prompter, print)
        assert [label for label, _ in prompter.asked] == [
            "SQL Server instance",
            "Databases (comma separated)",
            "Scheduled task name",
            "Description",
        ]
        assert outcome.plan.description == ""

    def test_defaults_offered(self, msdb, make_scheduler, tmp_path: Path) -> None:
        prompter = Prompter({"SQL Server instance": ["SQLHOST1"]})
        request = _request(tmp_path, instance=None, defaults={"instance": "SQLHOST1"})
        run_schedule(request, lambda kind, ctx: make_scheduler(), _ctx(msdb), prompter, print)
        assert prompter.asked == [("SQL Server instance", "SQLHOST1")]

    def test_recoverable_errors_reprompt_in_order(self, msdb, make_scheduler, tmp_path: Path) -> None:
        prompter = Prompter(
            {
                "SQL Server instance": ["SQLHOST1"],
                "Databases (comma separated)": ["DB1"],
                "Scheduled task name": ["Fresh"],
            }
        )
        echoed: list[str] = []
        request = _request(tmp_path, instance="ELSEWHERE", databases="DB1, Missing", name="Taken")
        outcome = run_schedule(
            request,
            lambda kind, ctx: make_scheduler(existing=("Taken",)),
            _ctx(msdb),
            prompter,
            echoed.append,
        )
        assert [e.split(":")[0] for e in echoed] == [
            "✗ ConnectionFailed",
            "✗ EntityNotFound",
            "✗ NameCollision",
        ]
        assert outcome.plan.identity == "Fresh"

    def test_backend_kind_passed_to_factory(self, msdb, make_scheduler, tmp_path: Path) -> None:
        kinds: list[str] = []

        def factory(kind, ctx):
            kinds.append(kind)
            return make_scheduler()

        run_schedule(_request(tmp_path, backend="agent"), factory, _ctx(msdb), Prompter(), print)
        assert kinds == ["agent"]

    def test_past_moment_declined(self, msdb, make_scheduler, tmp_path: Path) -> None:
        scheduler = make_scheduler()
        with pytest.raises(ConfirmationDeclined):
            run_schedule(
                _request(tmp_path, at="2026-10-01 03:00"),
                lambda kind, ctx: scheduler,
                _ctx(msdb),
                Prompter(),
                print,
            )
        assert scheduler.plans == {}

    def test_past_moment_confirmed(self, msdb, make_scheduler, tmp_path: Path) -> None:
        outcome = run_schedule(
            _request(tmp_path, at="2026-10-01 03:00"),
            lambda kind, ctx: make_scheduler(),
            _ctx(msdb, confirm=lambda msg: True),
            Prompter(),
            print,
        )
        assert outcome.moment == datetime(2026, 10, 1, 3, 0)

    def test_registration_failure_is_fatal(self, msdb, make_scheduler, tmp_path: Path) -> None:
        scheduler = make_scheduler(fail_create=True)
        with pytest.raises(RegistrationFailed):
            run_schedule(_request(tmp_path), lambda kind, ctx: scheduler, _ctx(msdb), Prompter(), print)
        assert scheduler.triggers == {}

    def test_trigger_failure_reports_leftover(
        self, msdb, make_scheduler, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        scheduler = make_scheduler(fail_attach=True)
        with caplog.at_level(logging.WARNING, logger="oneshot.core.orchestrator"):
            with pytest.raises(TriggerAttachFailed):
                run_schedule(
                    _request(tmp_path), lambda kind, ctx: scheduler, _ctx(msdb), Prompter(), print
                )
        assert "OneOff" in scheduler.plans
        assert "oneshot remove --backend task \"OneOff\"" in caplog.text
