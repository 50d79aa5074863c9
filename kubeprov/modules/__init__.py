"""
Provisioning modules: inventory, resources, execution engine and bootstrap.
"""
from .engine import PlaybookExecutor
from .inventory import Host, Inventory
from .ssh import ConnectionPool

__all__ = [
    'ConnectionPool',
    'Host',
    'Inventory',
    'PlaybookExecutor',
]
