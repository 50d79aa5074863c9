"""Data models for plays, tasks and their outcomes."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ResourceKind(str, Enum):
    """Kinds of resource a task can converge."""
    PACKAGE = 'package'
    FIREWALL = 'firewall'
    TEMPLATE = 'template'
    COPY = 'copy'
    TEXT_BLOCK = 'text_block'
    REPLACE = 'replace'
    SERVICE = 'service'
    APT_KEY = 'apt_key'
    APT_REPOSITORY = 'apt_repository'
    COMMAND = 'command'


class TaskStatus(str, Enum):
    """Terminal states of a task on one host."""
    SKIPPED = 'skipped'    # already in the desired state
    CHANGED = 'changed'
    FAILED = 'failed'
    TIMEOUT = 'timeout'
    NOT_RUN = 'not_run'    # an earlier task failed on this host

    @property
    def is_failure(self) -> bool:
        return self in (TaskStatus.FAILED, TaskStatus.TIMEOUT)


class RunOutcome(str, Enum):
    """Overall result of a provisioning run."""
    CONVERGED = 'converged'
    UNCHANGED = 'unchanged'
    PARTIAL_FAILURE = 'partial_failure'


@dataclass(frozen=True)
class Task:
    """One declarative desired-state operation."""
    name: str
    kind: ResourceKind
    params: Dict[str, Any] = field(default_factory=dict, hash=False)
    notify: Tuple[str, ...] = ()
    become: Optional[bool] = None
    local: bool = False
    register: Optional[str] = None
    timeout: Optional[int] = None

    def elevated(self, play_default: bool) -> bool:
        """Elevation is inherited from the play unless the task overrides it."""
        return play_default if self.become is None else self.become


@dataclass(frozen=True)
class Play:
    """An ordered list of tasks bound to one host group."""
    name: str
    hosts: str
    tasks: Tuple[Task, ...] = ()
    handlers: Tuple[Task, ...] = ()
    become: bool = False
    vars: Dict[str, Any] = field(default_factory=dict, hash=False)

    def handler(self, name: str) -> Optional[Task]:
        for handler in self.handlers:
            if handler.name == name:
                return handler
        return None


@dataclass
class TaskResult:
    """Outcome of one task (or handler) on one host."""
    task: str
    host: str
    status: TaskStatus
    message: str = ''
    rc: Optional[int] = None
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0
    handler: bool = False

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        return self.status.is_failure

    def as_registered(self) -> Dict[str, Any]:
        """Shape exposed to later tasks through ``register``."""
        return {
            'changed': self.changed,
            'failed': self.failed,
            'rc': self.rc,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'stdout_lines': self.stdout.splitlines(),
            'msg': self.message,
        }


@dataclass
class HostRun:
    """Everything that happened on one host during one play."""
    host: str
    results: List[TaskResult] = field(default_factory=list)
    handler_results: List[TaskResult] = field(default_factory=list)
    dropped_handlers: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(r.failed for r in self.results + self.handler_results)

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results + self.handler_results)

    @property
    def failure(self) -> Optional[TaskResult]:
        return next((r for r in self.results + self.handler_results if r.failed), None)


@dataclass
class PlayResult:
    """Per-host outcomes of a play."""
    name: str
    group: str
    hosts: Dict[str, HostRun] = field(default_factory=dict)

    @property
    def failed_hosts(self) -> List[str]:
        return [name for name, run in self.hosts.items() if run.failed]

    @property
    def succeeded_hosts(self) -> List[str]:
        return [name for name, run in self.hosts.items() if not run.failed]

    @property
    def changed(self) -> bool:
        return any(run.changed for run in self.hosts.values())

    @property
    def ok(self) -> bool:
        return not self.failed_hosts


@dataclass
class RunReport:
    """Results of every play in a run, in execution order."""
    plays: List[PlayResult] = field(default_factory=list)

    def add(self, play: PlayResult) -> None:
        self.plays.append(play)

    def extend(self, other: "RunReport") -> None:
        self.plays.extend(other.plays)

    @property
    def failed_hosts(self) -> List[str]:
        seen: List[str] = []
        for play in self.plays:
            for host in play.failed_hosts:
                if host not in seen:
                    seen.append(host)
        return seen

    @property
    def outcome(self) -> RunOutcome:
        if self.failed_hosts:
            return RunOutcome.PARTIAL_FAILURE
        if any(play.changed for play in self.plays):
            return RunOutcome.CONVERGED
        return RunOutcome.UNCHANGED

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for play in self.plays:
            for run in play.hosts.values():
                for result in run.results + run.handler_results:
                    counts[result.status.value] += 1
        return counts

    def summary(self) -> str:
        outcome = self.outcome
        if outcome == RunOutcome.PARTIAL_FAILURE:
            return f"partially failed with {len(self.failed_hosts)} host failure(s)"
        if outcome == RunOutcome.CONVERGED:
            return "converged cleanly"
        return "converged with no changes needed"
