"""Raw shell commands.

A raw command has no way to tell whether it is already "done", so it is
always out of sync and always reports changed once it runs. The optional
``creates``/``removes`` guards are the only idempotence it gets; anything
stronger has to come from the surrounding tasks (for example resetting a
node before joining it).
"""
import logging
import shlex
from typing import Any, Dict

from ..errors import ApplyError, RemoteExecutionError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import register

logger = logging.getLogger("kubeprov.resources.command")


@register
class RawCommandController(ResourceController):

    kind = ResourceKind.COMMAND
    required = ("cmd",)

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        creates = params.get("creates")
        if creates and ctx.stat(creates) is not None:
            return CheckResult(in_sync=True, detail=f"{creates} exists")
        removes = params.get("removes")
        if removes and ctx.stat(removes) is None:
            return CheckResult(in_sync=True, detail=f"{removes} does not exist")
        return CheckResult(in_sync=False, detail="raw command")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        command = str(params["cmd"])
        if params.get("chdir"):
            command = f"cd {shlex.quote(params['chdir'])} && {command}"
        try:
            rc, out, err = ctx.connection.execute(command, become=ctx.become, timeout=ctx.remaining())
        except RemoteExecutionError as e:
            raise ApplyError(str(e)) from e
        if rc != 0:
            detail = (err or out).strip().splitlines()
            raise ApplyError(f"command exited with {rc}: {detail[-1] if detail else 'no output'}")
        return ApplyResult(changed=True, message="command ran", rc=rc, stdout=out, stderr=err)
