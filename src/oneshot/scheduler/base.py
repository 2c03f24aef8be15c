"""Scheduler backend interface shared by Task Scheduler and SQL Server Agent."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from oneshot.core.commands import BackupCommands
    from oneshot.core.plan import Plan


class SchedulingError(Exception):
    """Base class for fatal backend failures; the run is aborted."""


class RegistrationFailed(SchedulingError):
    """The backend rejected the artifact."""


class TriggerAttachFailed(SchedulingError):
    """The one-time trigger could not be attached."""


class StepWiringFailed(SchedulingError):
    """A step or one of its edges could not be created."""


class HistoryExportFailed(SchedulingError):
    """The history export of the cleanup step could not be prepared."""


@dataclass(frozen=True)
class ArtifactHandle:
    """Reference to a registered task or job."""

    kind: str
    name: str
    location: str = ""


@dataclass
class StepSummary:
    name: str
    command: str
    on_success: Optional[int] = None
    on_failure: Optional[int] = None


@dataclass
class PlanSummary:
    """What the backend actually persisted for an artifact."""

    identity: str
    kind: str
    description: str = ""
    enabled: bool = False
    schedule_type: str = ""
    schedule_name: str = ""
    start: Optional[datetime] = None
    steps: list[StepSummary] = field(default_factory=list)
    location: str = ""


class Scheduler(ABC):
    """
    A place where a plan can be registered to run once at a given moment.

    Subclasses set ``kind`` (CLI name), ``label`` (what an artifact is called
    in messages) and the artifact naming rule.
    """

    kind: str = ""
    label: str = "artifact"
    name_pattern: re.Pattern = re.compile(r"^[A-Za-z0-9 _.\-]+$")
    max_name_length: int = 128

    @abstractmethod
    def commands(self, stamp: str) -> "BackupCommands":
        """Command source for plans registered with this backend."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """True if an artifact named ``name`` is already registered."""

    @abstractmethod
    def create(self, identity: str, plan: "Plan", description: str) -> ArtifactHandle:
        """Register ``plan`` without a trigger. Raises RegistrationFailed."""

    @abstractmethod
    def attach_one_time_trigger(self, handle: ArtifactHandle, moment: datetime) -> None:
        """Make the artifact run once at ``moment``. Raises TriggerAttachFailed."""

    @abstractmethod
    def describe(self, handle: ArtifactHandle) -> PlanSummary:
        """Read back the persisted artifact."""

    @abstractmethod
    def remove(self, handle: ArtifactHandle) -> None:
        """Unregister the artifact."""

    def handle_for(self, name: str) -> ArtifactHandle:
        return ArtifactHandle(kind=self.kind, name=name)
