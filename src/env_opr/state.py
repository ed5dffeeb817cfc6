"""Run state for environment operations.

Outcome is the immutable per-environment result. RunReport collects
outcomes for one run in discovery order; it is owned by the orchestrator
until finish() and read-only afterwards.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from manifest import Manifest


class Complexity(Enum):
    STANDARD = 'standard'
    COMPLEX = 'complex'


class Operation(Enum):
    CREATE = 'create'
    UPDATE = 'update'
    UPGRADE = 'upgrade'


class Status(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


class ErrorKind(Enum):
    """Where a failure came from."""
    LAUNCH = 'launch'      # command could not be started
    MANIFEST = 'manifest'  # manifest file could not be read
    PIP = 'pip'            # pip sub-resolver failure inside conda
    MANAGER = 'manager'    # conda itself failed
    DEADLINE = 'deadline'  # supervised deadline exceeded
    INTERNAL = 'internal'  # unexpected exception in orchestration


@dataclass(frozen=True)
class Classification:
    complexity: Complexity
    reason: str

    @property
    def is_complex(self) -> bool:
        return self.complexity is Complexity.COMPLEX


@dataclass(frozen=True)
class ExecutionRequest:
    """One conda operation for one environment.

    Attributes:
        env_name: Target environment name
        operation: CREATE, UPDATE or UPGRADE
        manifest: Manifest to apply (None for UPGRADE)
        prefix: Install location; None means a named environment
        timeout: Deadline in seconds for supervised runs
        complexity: Classification result, copied onto the outcome
    """
    env_name: str
    operation: Operation
    manifest: Optional[Manifest] = None
    prefix: Optional[Path] = None
    timeout: Optional[int] = None
    complexity: Optional[Complexity] = None


@dataclass(frozen=True)
class Outcome:
    """Terminal result for one environment in one run."""
    env_name: str
    status: Status
    operation: Operation
    complexity: Optional[Complexity] = None
    diagnostic: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is Status.SUCCESS

    def to_dict(self) -> dict:
        d: dict = {
            'name': self.env_name,
            'status': self.status.value,
            'operation': self.operation.value,
            'duration': round(self.duration, 1),
        }
        if self.complexity is not None:
            d['complexity'] = self.complexity.value
        if self.error_kind is not None:
            d['error_kind'] = self.error_kind.value
        if self.diagnostic is not None:
            d['error'] = self.diagnostic
        return d


class ReportFinalizedError(Exception):
    """Raised when recording into a finished RunReport."""


@dataclass
class RunReport:
    """Aggregate of outcomes for one run.

    All lists are derived from the recorded outcomes, so an environment can
    only ever be in one success bucket or one failure bucket.
    """
    command: str
    source: Optional[Path] = None
    upgrade_mode: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    _outcomes: dict[str, Outcome] = field(default_factory=dict, repr=False)
    _start: float = field(default_factory=time.time, repr=False)

    def record(self, outcome: Outcome) -> None:
        """Record the terminal outcome for an environment.

        Raises:
            ReportFinalizedError: If the report is already finished
            ValueError: If the environment already has an outcome
        """
        if self.finished:
            raise ReportFinalizedError(f"Report finished; cannot record '{outcome.env_name}'")
        if outcome.env_name in self._outcomes:
            raise ValueError(f"Outcome already recorded for '{outcome.env_name}'")
        self._outcomes[outcome.env_name] = outcome

    def finish(self) -> 'RunReport':
        if not self.finished:
            self.finished_at = datetime.now()
        return self

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def outcomes(self) -> dict[str, Outcome]:
        return dict(self._outcomes)

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return time.time() - self._start
        return (self.finished_at - self.started_at).total_seconds()

    def _names(self, predicate) -> list[str]:
        return [name for name, o in self._outcomes.items() if predicate(o)]

    @property
    def total(self) -> int:
        return len(self._outcomes)

    @property
    def success_count(self) -> int:
        return len(self._names(lambda o: o.status is Status.SUCCESS))

    @property
    def failed_environments(self) -> list[str]:
        return self._names(lambda o: o.status is Status.FAILED)

    @property
    def timeout_environments(self) -> list[str]:
        return self._names(lambda o: o.status is Status.TIMED_OUT)

    @property
    def created_environments(self) -> list[str]:
        return self._names(lambda o: o.succeeded and o.operation is Operation.CREATE)

    @property
    def updated_environments(self) -> list[str]:
        return self._names(lambda o: o.succeeded and o.operation is not Operation.CREATE)

    @property
    def complex_environments(self) -> list[str]:
        return self._names(lambda o: o.complexity is Complexity.COMPLEX)

    @property
    def standard_environments(self) -> list[str]:
        return self._names(lambda o: o.complexity is Complexity.STANDARD)

    @property
    def all_succeeded(self) -> bool:
        return self.success_count == self.total
