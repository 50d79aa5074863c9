"""Resource controller contract.

A controller converges one kind of resource. ``check`` must be free of side
effects and must agree with ``converge``: whenever ``check`` reports the
resource in sync, converging would change nothing.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import ApplyError, CheckError, PlaybookError, RemoteExecutionError, TaskTimeout
from ..models import ResourceKind
from ..templating import TemplateRenderer

logger = logging.getLogger("kubeprov.resources")


@dataclass
class ExecutionContext:
    """What a controller needs to act on one host for one task.

    ``timeout`` bounds the whole task: every call gets only the time left
    before the deadline fixed at construction.
    """
    connection: Any
    host: str
    become: bool = False
    timeout: Optional[int] = None
    renderer: Optional[TemplateRenderer] = None
    variables: Mapping[str, Any] = field(default_factory=dict)
    deadline: Optional[float] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.timeout:
            self.deadline = time.monotonic() + self.timeout

    def remaining(self) -> Optional[float]:
        """Seconds left for this task, or None when unbounded."""
        if self.deadline is None:
            return None
        left = self.deadline - time.monotonic()
        if left <= 0:
            raise TaskTimeout(f"Task exceeded its {self.timeout} second timeout on {self.host}")
        return left

    def query(self, command: str) -> Tuple[int, str, str]:
        """Run a read-only command during a check."""
        try:
            return self.connection.execute(command, become=self.become, timeout=self.remaining())
        except RemoteExecutionError as e:
            raise CheckError(str(e)) from e

    def run(self, command: str, stdin: Optional[str] = None) -> Tuple[int, str, str]:
        """Run a command that changes state; non-zero exit is an ApplyError."""
        try:
            rc, out, err = self.connection.execute(
                command, become=self.become, timeout=self.remaining(), stdin=stdin
            )
        except RemoteExecutionError as e:
            raise ApplyError(str(e)) from e
        if rc != 0:
            raise ApplyError(f"'{command}' exited with {rc}: {(err or out).strip()}")
        return rc, out, err

    def read_file(self, path: str) -> Optional[str]:
        try:
            return self.connection.read_file(path, become=self.become, timeout=self.remaining())
        except RemoteExecutionError as e:
            raise CheckError(str(e)) from e

    def stat(self, path: str):
        try:
            return self.connection.stat(path, become=self.become, timeout=self.remaining())
        except RemoteExecutionError as e:
            raise CheckError(str(e)) from e

    def write_file(self, path: str, content: str, owner: Optional[str] = None,
                   group: Optional[str] = None, mode: Optional[str] = None) -> None:
        try:
            self.connection.write_file(
                path, content, become=self.become, owner=owner, group=group, mode=mode,
                timeout=self.remaining(),
            )
        except RemoteExecutionError as e:
            raise ApplyError(str(e)) from e


@dataclass
class CheckResult:
    in_sync: bool
    detail: str = ''


@dataclass
class ApplyResult:
    changed: bool
    message: str = ''
    rc: Optional[int] = None
    stdout: str = ''
    stderr: str = ''


class ResourceController(ABC):
    """Idempotent check/converge over one resource kind."""

    kind: ResourceKind
    required: Tuple[str, ...] = ()
    choices: Dict[str, Tuple[Any, ...]] = {}

    def validate(self, params: Dict[str, Any]) -> None:
        """Static parameter validation, run when the playbook is built."""
        missing = [p for p in self.required if params.get(p) in (None, '')]
        if missing:
            raise PlaybookError(f"{self.kind.value}: missing required parameter(s): {', '.join(missing)}")
        for name, allowed in self.choices.items():
            if name in params and params[name] is not None and params[name] not in allowed:
                raise PlaybookError(
                    f"{self.kind.value}: {name} must be one of {', '.join(map(str, allowed))}, "
                    f"got {params[name]!r}"
                )

    @abstractmethod
    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        """Report whether the resource is already in the desired state."""

    @abstractmethod
    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        """Bring the resource to the desired state."""

    def apply(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        """Check, then converge only when out of sync."""
        state = self.check(ctx, params)
        if state.in_sync:
            return ApplyResult(changed=False, message=state.detail)
        return self.converge(ctx, params)


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def normalize_mode(value: Any) -> Optional[str]:
    """YAML reads 0644 as an int; keep modes as octal strings."""
    if value is None:
        return None
    if isinstance(value, int):
        return format(value, 'o')
    return str(value).lstrip('0') or '0'


def file_attrs_in_sync(ctx: ExecutionContext, path: str, params: Dict[str, Any]) -> Tuple[bool, str]:
    """Compare owner/group/mode of ``path`` with the requested ones."""
    wanted = {k: params.get(k) for k in ('owner', 'group', 'mode') if params.get(k) is not None}
    if not wanted:
        return True, ''
    current = ctx.stat(path)
    if current is None:
        return False, f"{path} does not exist"
    if 'owner' in wanted and current.owner != str(wanted['owner']):
        return False, f"owner is {current.owner}"
    if 'group' in wanted and current.group != str(wanted['group']):
        return False, f"group is {current.group}"
    if 'mode' in wanted and (current.mode.lstrip('0') or '0') != normalize_mode(wanted['mode']):
        return False, f"mode is {current.mode}"
    return True, ''
