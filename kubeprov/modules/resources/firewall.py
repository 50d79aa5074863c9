"""firewalld port rules, runtime and permanent."""
import logging
import re
import shlex
from typing import Any, Dict, List, Tuple

from ..errors import CheckError, PlaybookError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import register

logger = logging.getLogger("kubeprov.resources.firewall")

PORT_RE = re.compile(r"^(\d{1,5})(?:-(\d{1,5}))?/(tcp|udp|sctp|dccp)$")


def port_spec(params: Dict[str, Any]) -> str:
    """Normalize ``port: 6443/tcp`` or ``port: 6443, protocol: tcp``."""
    port = str(params["port"]).strip()
    if "/" not in port:
        port = f"{port}/{params.get('protocol', 'tcp')}"
    return port


@register
class FirewallPortController(ResourceController):
    """Open or close a port (or port range) in firewalld.

    ``immediate`` affects the running ruleset, ``permanent`` the one loaded at
    boot. Both default to on; setting only one leaves the two out of step
    after the next reload or reboot.
    """

    kind = ResourceKind.FIREWALL
    required = ("port",)
    choices = {"state": ("enabled", "disabled")}

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        spec = port_spec(params)
        match = PORT_RE.match(spec)
        if not match:
            raise PlaybookError(f"firewall: invalid port '{spec}', expected e.g. 6443/tcp or 30000-32767/tcp")
        low, high = int(match.group(1)), int(match.group(2) or match.group(1))
        if not (0 < low <= high <= 65535):
            raise PlaybookError(f"firewall: invalid port range '{spec}'")
        immediate = params.get("immediate", True)
        permanent = params.get("permanent", True)
        if not immediate and not permanent:
            raise PlaybookError("firewall: at least one of immediate or permanent must be set")
        if immediate != permanent:
            logger.warning(
                f"firewall rule {spec}: immediate={immediate} permanent={permanent}; "
                "runtime and permanent rulesets will drift"
            )

    def _scopes(self, params: Dict[str, Any]) -> List[Tuple[str, str]]:
        zone = f" --zone={shlex.quote(params['zone'])}" if params.get("zone") else ""
        scopes = []
        if params.get("immediate", True):
            scopes.append(("runtime", zone))
        if params.get("permanent", True):
            scopes.append(("permanent", f" --permanent{zone}"))
        return scopes

    def _drift(self, ctx: ExecutionContext, params: Dict[str, Any]) -> List[Tuple[str, str]]:
        port = port_spec(params)
        want_open = params.get("state", "enabled") == "enabled"
        drift = []
        for scope, flags in self._scopes(params):
            rc, out, err = ctx.query(f"firewall-cmd{flags} --query-port={port}")
            if rc not in (0, 1):
                raise CheckError(f"firewall-cmd --query-port failed ({scope}): {(err or out).strip()}")
            if (rc == 0) != want_open:
                drift.append((scope, flags))
        return drift

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        drift = self._drift(ctx, params)
        if not drift:
            return CheckResult(in_sync=True, detail=f"{port_spec(params)} already {params.get('state', 'enabled')}")
        return CheckResult(in_sync=False, detail=f"{port_spec(params)} differs in {', '.join(s for s, _ in drift)}")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        port = port_spec(params)
        action = "--add-port" if params.get("state", "enabled") == "enabled" else "--remove-port"
        drift = self._drift(ctx, params)
        for _, flags in drift:
            ctx.run(f"firewall-cmd{flags} {action}={port}")
        if not drift:
            return ApplyResult(changed=False, message=f"{port} unchanged")
        return ApplyResult(
            changed=True,
            message=f"{action.lstrip('-')} {port} ({', '.join(s for s, _ in drift)})",
        )
