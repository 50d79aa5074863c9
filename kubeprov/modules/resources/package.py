"""Debian package state: install, upgrade, remove and hold packages."""
import logging
import shlex
from typing import Any, Dict, List

from ..errors import CheckError, PlaybookError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController, as_list
from .registry import register

logger = logging.getLogger("kubeprov.resources.package")

APT_ENV = "DEBIAN_FRONTEND=noninteractive"
ALL_PACKAGES = "*"


def parse_policy(output: str) -> Dict[str, str]:
    """Extract Installed/Candidate versions from ``apt-cache policy``."""
    versions = {}
    for line in output.splitlines():
        line = line.strip()
        for key in ("Installed", "Candidate"):
            if line.startswith(f"{key}:"):
                versions[key.lower()] = line.split(":", 1)[1].strip()
    return versions


def parse_simulated_upgrade(output: str) -> List[str]:
    """Package names ``apt-get -s upgrade`` would install.

    Held and kept-back packages get no ``Inst`` line, so they never count.
    """
    names = []
    for line in output.splitlines():
        if line.startswith("Inst "):
            names.append(line.split()[1])
    return names


@register
class PackageController(ResourceController):
    """apt/dpkg backed package state.

    ``state`` is one of present, latest or absent; ``selection`` (hold or
    install) pins packages against upgrades the way ``dpkg_selections`` does.
    ``name: '*'`` with ``state: latest`` upgrades every installed package.
    """

    kind = ResourceKind.PACKAGE
    required = ("name",)
    choices = {
        "state": ("present", "latest", "absent"),
        "selection": ("hold", "install"),
    }

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        names = as_list(params.get("name"))
        if ALL_PACKAGES in names:
            if len(names) > 1 or params.get("state") != "latest":
                raise PlaybookError("package: name '*' is only valid alone with state latest")
            if params.get("selection"):
                raise PlaybookError("package: cannot change the selection of '*'")
        if params.get("state") is None and params.get("selection") is None:
            raise PlaybookError("package: one of state or selection is required")

    def _installed(self, ctx: ExecutionContext, name: str) -> bool:
        rc, out, _ = ctx.query(f"dpkg-query -W -f='${{Status}}' {shlex.quote(name)}")
        return rc == 0 and out.strip().endswith("installed") and "not-installed" not in out

    def _outdated(self, ctx: ExecutionContext, name: str) -> bool:
        rc, out, err = ctx.query(f"apt-cache policy {shlex.quote(name)}")
        if rc != 0:
            raise CheckError(f"apt-cache policy {name} failed: {err.strip()}")
        versions = parse_policy(out)
        if not versions.get("candidate") or versions["candidate"] == "(none)":
            raise CheckError(f"No installation candidate for package '{name}'")
        installed = versions.get("installed", "(none)")
        return installed == "(none)" or installed != versions["candidate"]

    def _held(self, ctx: ExecutionContext, name: str) -> bool:
        rc, out, err = ctx.query(f"apt-mark showhold {shlex.quote(name)}")
        if rc != 0:
            raise CheckError(f"apt-mark showhold {name} failed: {err.strip()}")
        return name in out.split()

    def _pending(self, ctx: ExecutionContext, params: Dict[str, Any]) -> Dict[str, List[str]]:
        """Names that still need each kind of change."""
        names = as_list(params["name"])
        state = params.get("state")
        selection = params.get("selection")
        pending: Dict[str, List[str]] = {"install": [], "remove": [], "upgrade_all": [], "mark": []}

        if names == [ALL_PACKAGES]:
            rc, out, err = ctx.query(f"{APT_ENV} apt-get -s upgrade")
            if rc != 0:
                raise CheckError(f"apt-get -s upgrade failed: {err.strip()}")
            pending["upgrade_all"] = parse_simulated_upgrade(out)
            return pending

        for name in names:
            if state == "present" and not self._installed(ctx, name):
                pending["install"].append(name)
            elif state == "latest" and self._outdated(ctx, name):
                pending["install"].append(name)
            elif state == "absent" and self._installed(ctx, name):
                pending["remove"].append(name)

            if selection is not None and self._held(ctx, name) != (selection == "hold"):
                pending["mark"].append(name)
        return pending

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        pending = self._pending(ctx, params)
        changes = [f"{action}: {', '.join(names)}" for action, names in pending.items() if names]
        if not changes:
            return CheckResult(in_sync=True, detail="packages in desired state")
        return CheckResult(in_sync=False, detail="; ".join(changes))

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        if params.get("update_cache"):
            ctx.run("apt-get update")

        pending = self._pending(ctx, params)
        done = []
        if pending["upgrade_all"]:
            ctx.run(f"{APT_ENV} apt-get -y upgrade")
            done.append(f"upgraded {len(pending['upgrade_all'])} package(s)")
        if pending["install"]:
            names = " ".join(shlex.quote(n) for n in pending["install"])
            ctx.run(f"{APT_ENV} apt-get install -y {names}")
            done.append(f"installed {', '.join(pending['install'])}")
        if pending["remove"]:
            names = " ".join(shlex.quote(n) for n in pending["remove"])
            ctx.run(f"{APT_ENV} apt-get remove -y {names}")
            done.append(f"removed {', '.join(pending['remove'])}")
        if pending["mark"]:
            action = "hold" if params.get("selection") == "hold" else "unhold"
            names = " ".join(shlex.quote(n) for n in pending["mark"])
            ctx.run(f"apt-mark {action} {names}")
            done.append(f"{action} {', '.join(pending['mark'])}")

        if not done:
            return ApplyResult(changed=False, message="packages in desired state")
        logger.debug(f"[{ctx.host}] {'; '.join(done)}")
        return ApplyResult(changed=True, message="; ".join(done))
