"""Whole-file resources: rendered templates and copied content."""
import logging
import os
from typing import Any, Dict

from ..errors import CheckError, PlaybookError
from ..models import ResourceKind
from .base import (
    ApplyResult,
    CheckResult,
    ExecutionContext,
    ResourceController,
    file_attrs_in_sync,
    normalize_mode,
)
from .registry import register

logger = logging.getLogger("kubeprov.resources.files")


class _FileController(ResourceController):
    """Shared logic: desired text vs the current text at ``dest``."""

    required = ("dest",)

    def desired_content(self, ctx: ExecutionContext, params: Dict[str, Any]) -> str:
        raise NotImplementedError

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        dest = params["dest"]
        desired = self.desired_content(ctx, params)
        current = ctx.read_file(dest)
        if current is None:
            return CheckResult(in_sync=False, detail=f"{dest} does not exist")
        if current != desired:
            return CheckResult(in_sync=False, detail=f"{dest} content differs")
        attrs_ok, detail = file_attrs_in_sync(ctx, dest, params)
        if not attrs_ok:
            return CheckResult(in_sync=False, detail=detail)
        return CheckResult(in_sync=True, detail=f"{dest} up to date")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        dest = params["dest"]
        ctx.write_file(
            dest,
            self.desired_content(ctx, params),
            owner=params.get("owner"),
            group=params.get("group"),
            mode=normalize_mode(params.get("mode")),
        )
        return ApplyResult(changed=True, message=f"wrote {dest}")


@register
class TemplateController(_FileController):
    """Render a Jinja2 template and install it at ``dest``.

    Changed only when the rendered text (or requested ownership/mode)
    differs from what is on the host.
    """

    kind = ResourceKind.TEMPLATE
    required = ("src", "dest")

    def desired_content(self, ctx: ExecutionContext, params: Dict[str, Any]) -> str:
        if ctx.renderer is None:
            raise CheckError("template: no template renderer configured")
        return ctx.renderer.render_file(params["src"], ctx.variables)


@register
class CopyController(_FileController):
    """Install literal ``content`` or a local ``src`` file at ``dest``."""

    kind = ResourceKind.COPY

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        if ("content" in params) == ("src" in params):
            raise PlaybookError("copy: exactly one of content or src is required")

    def desired_content(self, ctx: ExecutionContext, params: Dict[str, Any]) -> str:
        if "content" in params:
            return str(params["content"])
        src = os.path.expanduser(str(params["src"]))
        try:
            with open(src, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError as e:
            raise CheckError(f"copy: source file not found: {src}") from e
