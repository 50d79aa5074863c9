"""In-place edits of existing files.

Both controllers compute the edited text with a pure function and compare it
with the current text, so ``check`` and ``converge`` cannot disagree.
"""
import logging
import re
from typing import Any, Dict, Optional, Tuple

from ..errors import CheckError, PlaybookError
from ..models import ResourceKind
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import register

logger = logging.getLogger("kubeprov.resources.textedit")

DEFAULT_MARKER = "# {mark} KUBEPROV MANAGED BLOCK"


def render_block(
    text: str,
    block: str,
    marker: str = DEFAULT_MARKER,
    marker_begin: str = "BEGIN",
    marker_end: str = "END",
    present: bool = True,
) -> str:
    """Return ``text`` with the marker-delimited block inserted, updated or removed.

    The block is located by lines equal to the begin and end markers. Content
    outside the markers is left untouched; a missing block is appended at the
    end of the file.
    """
    begin = marker.replace("{mark}", marker_begin)
    end = marker.replace("{mark}", marker_end)
    lines = text.splitlines()

    wanted = []
    if present and block.strip():
        wanted = [begin] + block.rstrip("\n").splitlines() + [end]

    start = lines.index(begin) if begin in lines else None
    if start is not None:
        try:
            stop = lines.index(end, start + 1)
        except ValueError:
            raise ValueError(f"unterminated managed block: found '{begin}' without '{end}'") from None
        new_lines = lines[:start] + wanted + lines[stop + 1:]
        if not new_lines:
            return ""
        return "\n".join(new_lines) + ("\n" if text.endswith("\n") else "")

    if not wanted:
        return text
    prefix = text if not text or text.endswith("\n") else text + "\n"
    return prefix + "\n".join(wanted) + "\n"


def replace_lines(text: str, regexp: str, replace: str) -> Tuple[str, int]:
    """Multiline regex substitution; returns the new text and match count."""
    return re.compile(regexp, re.MULTILINE).subn(replace, text)


class _EditController(ResourceController):

    def edit(self, current: str, params: Dict[str, Any]) -> str:
        raise NotImplementedError

    def _current(self, ctx: ExecutionContext, params: Dict[str, Any]) -> Optional[str]:
        current = ctx.read_file(params["path"])
        if current is None and not params.get("create", False):
            raise CheckError(f"{params['path']} does not exist")
        return current or ""

    def _planned(self, ctx: ExecutionContext, params: Dict[str, Any]) -> Tuple[str, str]:
        current = self._current(ctx, params)
        try:
            return current, self.edit(current, params)
        except ValueError as e:
            raise CheckError(f"{params['path']}: {e}") from e

    def check(self, ctx: ExecutionContext, params: Dict[str, Any]) -> CheckResult:
        current, planned = self._planned(ctx, params)
        if current == planned:
            return CheckResult(in_sync=True, detail=f"{params['path']} unchanged")
        return CheckResult(in_sync=False, detail=f"{params['path']} needs editing")

    def converge(self, ctx: ExecutionContext, params: Dict[str, Any]) -> ApplyResult:
        current, planned = self._planned(ctx, params)
        if current == planned:
            return ApplyResult(changed=False, message=f"{params['path']} unchanged")
        ctx.write_file(params["path"], planned)
        return ApplyResult(changed=True, message=f"edited {params['path']}")


@register
class TextBlockController(_EditController):
    """Keep a marker-delimited block of text inside an existing file."""

    kind = ResourceKind.TEXT_BLOCK
    required = ("path",)
    choices = {"state": ("present", "absent")}

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        if "{mark}" not in params.get("marker", DEFAULT_MARKER):
            raise PlaybookError("text_block: marker must contain '{mark}'")
        if params.get("state", "present") == "present" and "block" not in params:
            raise PlaybookError("text_block: block is required when state is present")

    def edit(self, current: str, params: Dict[str, Any]) -> str:
        return render_block(
            current,
            str(params.get("block", "")),
            marker=params.get("marker", DEFAULT_MARKER),
            marker_begin=params.get("marker_begin", "BEGIN"),
            marker_end=params.get("marker_end", "END"),
            present=params.get("state", "present") == "present",
        )


@register
class ReplaceController(_EditController):
    """Regex substitution over every matching line of a file."""

    kind = ResourceKind.REPLACE
    required = ("path", "regexp")

    def validate(self, params: Dict[str, Any]) -> None:
        super().validate(params)
        try:
            re.compile(params["regexp"])
        except re.error as e:
            raise PlaybookError(f"replace: invalid regexp {params['regexp']!r}: {e}") from e

    def edit(self, current: str, params: Dict[str, Any]) -> str:
        new_text, _ = replace_lines(current, params["regexp"], str(params.get("replace", "")))
        return new_text
