"""Jinja2 rendering of task parameters and template files."""
import logging
import os
from typing import Any, List, Mapping, Optional

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ..config import Config
from .errors import TemplateRenderError

logger = logging.getLogger("kubeprov.templating")


def default_template_dirs() -> List[str]:
    """Directories searched for template ``src`` files."""
    dirs = []
    if Config.TEMPLATE_DIR:
        dirs.append(Config.TEMPLATE_DIR)
    dirs.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates"))
    return dirs


class TemplateRenderer:
    """Renders strings and template files with strict undefined handling."""

    def __init__(self, template_dirs: Optional[List[str]] = None):
        self.template_dirs = template_dirs if template_dirs is not None else default_template_dirs()
        self.env = Environment(
            loader=FileSystemLoader(self.template_dirs),
            keep_trailing_newline=True,
            undefined=StrictUndefined,  # Raise error for undefined variables
        )

    def render_string(self, text: str, context: Mapping[str, Any]) -> str:
        if "{{" not in text and "{%" not in text:
            return text
        try:
            return self.env.from_string(text).render(**context)
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"Template syntax error in {text!r}: {e}") from e
        except UndefinedError as e:
            raise TemplateRenderError(f"Undefined variable in {text!r}: {e}") from e

    def render_params(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Recursively render every string inside task parameters."""
        if isinstance(value, str):
            return self.render_string(value, context)
        if isinstance(value, dict):
            return {k: self.render_params(v, context) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render_params(v, context) for v in value]
        return value

    def render_file(self, src: str, context: Mapping[str, Any]) -> str:
        """Render a template file found in one of the template directories."""
        try:
            if os.path.isabs(src):
                with open(src, "r", encoding="utf-8") as f:
                    template = self.env.from_string(f.read())
            else:
                template = self.env.get_template(src)
            return template.render(**context)
        except TemplateNotFound as e:
            raise TemplateRenderError(f"Template not found: {e} (searched {self.template_dirs})") from e
        except FileNotFoundError as e:
            raise TemplateRenderError(f"Template not found: {src}") from e
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"Template syntax error in {src}: {e}") from e
        except UndefinedError as e:
            raise TemplateRenderError(f"Missing template variable in {src}: {e}") from e
