from . import bootstrap, inventory, site, validate

__all__ = ['bootstrap', 'inventory', 'site', 'validate']
