"""Lookup of resource controllers by kind."""
from typing import Dict, Type

from ..errors import PlaybookError
from ..models import ResourceKind
from .base import ResourceController

# A simple global registry, filled by the @register decorator on import.
_CONTROLLERS: Dict[ResourceKind, ResourceController] = {}


def register(cls: Type[ResourceController]) -> Type[ResourceController]:
    """Decorator to register a controller class for its kind."""
    _CONTROLLERS[cls.kind] = cls()
    return cls


def get_controller(kind: ResourceKind) -> ResourceController:
    """Fetch the controller for a kind. Raises PlaybookError if none exists."""
    try:
        return _CONTROLLERS[ResourceKind(kind)]
    except (KeyError, ValueError):
        raise PlaybookError(f"No resource controller for kind '{kind}'") from None


def registered_kinds() -> list:
    return sorted(k.value for k in _CONTROLLERS)
