"""Resource controllers, one module per resource kind.

Importing this package registers every controller; use ``get_controller``
to look one up by ResourceKind.
"""
from .base import ApplyResult, CheckResult, ExecutionContext, ResourceController
from .registry import get_controller, registered_kinds
from . import command, files, firewall, package, repository, service, textedit  # noqa: F401  (registration)

__all__ = [
    'ApplyResult',
    'CheckResult',
    'ExecutionContext',
    'ResourceController',
    'get_controller',
    'registered_kinds',
]
