"""systemd service state."""
import logging
import shlex
from typing import Any, Dict, List

from ..errors import PlaybookError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import register

logger = logging.getLogger("kubeprov.resources.service")

# States that are actions rather than conditions; they always report changed.
ACTION_STATES = ("restarted", "reloaded")


@register
class ServiceController(ResourceController):
    """Ensure a unit is enabled and/or running.

    ``restarted``, ``reloaded`` and ``daemon_reload`` are actions and are never
    in sync, which is why they are normally used from handlers.
    """

    kind = ResourceKind.SERVICE
    choices = {"state": ("started", "stopped", "restarted", "reloaded")}

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        if not params.get("name") and not params.get("daemon_reload"):
            raise PlaybookError("service: name is required unless daemon_reload is set")
        if params.get("name") and params.get("state") is None and params.get("enabled") is None:
            raise PlaybookError("service: one of state or enabled is required")

    def _pending(self, ctx: ExecutionContext, params: Dict[str, Any]) -> List[str]:
        """systemctl sub-commands still needed, in execution order."""
        steps = []
        if params.get("daemon_reload"):
            steps.append("daemon-reload")
        name = params.get("name")
        if not name:
            return steps
        unit = shlex.quote(name)

        enabled = params.get("enabled")
        if enabled is not None:
            _, out, _ = ctx.query(f"systemctl is-enabled {unit}")
            is_enabled = out.strip() in ("enabled", "enabled-runtime", "static", "alias")
            if bool(enabled) != is_enabled:
                steps.append(f"{'enable' if enabled else 'disable'} {unit}")

        state = params.get("state")
        if state in ACTION_STATES:
            steps.append(f"{state[:-2]} {unit}")
        elif state is not None:
            _, out, _ = ctx.query(f"systemctl is-active {unit}")
            is_active = out.strip() == "active"
            if state == "started" and not is_active:
                steps.append(f"start {unit}")
            elif state == "stopped" and is_active:
                steps.append(f"stop {unit}")
        return steps

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        steps = self._pending(ctx, params)
        if not steps:
            return CheckResult(in_sync=True, detail=f"{params.get('name')} in desired state")
        return CheckResult(in_sync=False, detail="pending: " + ", ".join(steps))

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        steps = self._pending(ctx, params)
        for step in steps:
            ctx.run(f"systemctl {step}")
        if not steps:
            return ApplyResult(changed=False, message=f"{params.get('name')} in desired state")
        return ApplyResult(changed=True, message="systemctl " + ", ".join(steps))
