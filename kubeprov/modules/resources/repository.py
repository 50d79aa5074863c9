"""apt signing keys and source lists."""
import logging
import re
import shlex
from typing import Any, Dict

from ..errors import PlaybookError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import register

logger = logging.getLogger("kubeprov.resources.repository")

KEYRING_DIR = "/etc/apt/trusted.gpg.d"
SOURCES_DIR = "/etc/apt/sources.list.d"


def keyring_path(params: Dict[str, Any]) -> str:
    return f"{KEYRING_DIR}/{params['name']}.asc"


def repo_filename(repo: str) -> str:
    """Derive a sources.list.d file name from the repository URL."""
    url = next((part for part in repo.split() if "://" in part), repo)
    host_and_path = url.split("://", 1)[-1]
    return re.sub(r"[^A-Za-z0-9]+", "_", host_and_path).strip("_")


@register
class AptKeyController(ResourceController):
    """Download an armored signing key into apt's trusted keyring directory."""

    kind = ResourceKind.APT_KEY
    required = ("url", "name")
    choices = {"state": ("present",)}

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        path = keyring_path(params)
        if ctx.stat(path) is None:
            return CheckResult(in_sync=False, detail=f"{path} missing")
        return CheckResult(in_sync=True, detail=f"{path} present")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        path = keyring_path(params)
        ctx.run(f"curl -fsSL {shlex.quote(params['url'])} -o {shlex.quote(path)}")
        ctx.run(f"chmod 644 {shlex.quote(path)}")
        return ApplyResult(changed=True, message=f"downloaded {params['url']} to {path}")


@register
class AptRepositoryController(ResourceController):
    """Ensure a ``deb`` line is present in a sources.list.d file."""

    kind = ResourceKind.APT_REPOSITORY
    required = ("repo",)
    choices = {"state": ("present",)}

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        if not str(params["repo"]).startswith(("deb ", "deb-src ")):
            raise PlaybookError(f"apt_repository: repo must start with 'deb ', got {params['repo']!r}")

    def _path(self, params: Dict[str, Any]) -> str:
        return f"{SOURCES_DIR}/{params.get('filename') or repo_filename(params['repo'])}.list"

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        path = self._path(params)
        current = ctx.read_file(path) or ""
        if params["repo"].strip() in (line.strip() for line in current.splitlines()):
            return CheckResult(in_sync=True, detail=f"repository present in {path}")
        return CheckResult(in_sync=False, detail=f"repository missing from {path}")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        path = self._path(params)
        current = ctx.read_file(path) or ""
        if current and not current.endswith("\n"):
            current += "\n"
        ctx.write_file(path, current + params["repo"].strip() + "\n", mode="644")
        if params.get("update_cache", True):
            ctx.run("apt-get update")
        return ApplyResult(changed=True, message=f"added repository to {path}")
