"""Inventory: hosts, host groups and group resolution.

Inventory file format (YAML)::

    hosts:
      cp-1: {address: 10.0.0.1, user: ubuntu}
      worker-1: {address: 10.0.0.2}
    groups:
      control: {hosts: [cp-1]}
      workers: {hosts: [worker-1]}
      cluster: {children: [control, workers]}

Host keys other than ``address``, ``user``, ``port``, ``key_path`` and
``become_password`` are kept as per-host variables.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml

from ..config import Config
from .errors import ResolutionError

logger = logging.getLogger("kubeprov.inventory")

ALL_GROUP = "all"


@dataclass(frozen=True)
class Host:
    """A target machine, identified by its inventory name."""
    name: str
    address: str
    user: str = Config.SSH_USER
    port: int = 22
    key_path: Optional[str] = None
    become_password: Optional[str] = field(default=None, repr=False, compare=False)
    vars: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class HostGroup:
    """A named set of hosts; ``children`` makes it the union of other groups."""
    name: str
    hosts: List[str] = field(default_factory=list)
    children: List[str] = field(default_factory=list)


class Inventory:
    """Resolves logical group names to concrete hosts."""

    def __init__(self, hosts: List[Host], groups: List[HostGroup]):
        self.hosts: Dict[str, Host] = {}
        for host in hosts:
            if host.name in self.hosts:
                raise ResolutionError(f"Duplicate host in inventory: {host.name}")
            self.hosts[host.name] = host

        self.groups: Dict[str, HostGroup] = {}
        for group in groups:
            if group.name == ALL_GROUP:
                raise ResolutionError(f"'{ALL_GROUP}' is implicit and cannot be redefined")
            self.groups[group.name] = group

        self._validate()

    def _validate(self) -> None:
        for group in self.groups.values():
            for host_name in group.hosts:
                if host_name not in self.hosts:
                    raise ResolutionError(f"Group '{group.name}' references unknown host '{host_name}'")
            for child in group.children:
                if child != ALL_GROUP and child not in self.groups:
                    raise ResolutionError(f"Group '{group.name}' references unknown group '{child}'")
        # Surface cycles at load time rather than at play start
        for name in self.groups:
            self.resolve(name)

    def resolve(self, group_name: str) -> List[Host]:
        """Resolve a group name to its hosts.

        Derived groups are the union of their children. Duplicates are
        collapsed by host name, keeping the first occurrence in declaration
        order, so the result is deterministic.

        Raises:
            ResolutionError: If the group (or one of its children) is unknown,
                or the group definitions are cyclic
        """
        names: List[str] = []
        self._collect(group_name, names, set(), [])
        return [self.hosts[n] for n in names]

    def _collect(self, group_name: str, names: List[str], seen: Set[str], stack: List[str]) -> None:
        if group_name in stack:
            cycle = " -> ".join(stack + [group_name])
            raise ResolutionError(f"Cyclic group definition: {cycle}")

        if group_name == ALL_GROUP:
            members = list(self.hosts)
            children: List[str] = []
        elif group_name in self.groups:
            group = self.groups[group_name]
            members = group.hosts
            children = group.children
        else:
            raise ResolutionError(f"Unknown host group: '{group_name}'")

        for host_name in members:
            if host_name not in seen:
                seen.add(host_name)
                names.append(host_name)
        for child in children:
            self._collect(child, names, seen, stack + [group_name])

    def group_names(self) -> List[str]:
        return [ALL_GROUP] + list(self.groups)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Inventory":
        if not isinstance(data, dict):
            raise ResolutionError(f"Invalid inventory format: expected dict, got {type(data).__name__}")

        defaults = data.get("defaults") or {}
        hosts = []
        for name, spec in (data.get("hosts") or {}).items():
            spec = dict(defaults, **(spec or {}))
            if "address" not in spec:
                raise ResolutionError(f"Host '{name}' has no address")
            hosts.append(Host(
                name=name,
                address=str(spec.pop("address")),
                user=spec.pop("user", Config.SSH_USER),
                port=int(spec.pop("port", 22)),
                key_path=spec.pop("key_path", None),
                become_password=spec.pop("become_password", None),
                vars=spec,
            ))

        groups = []
        for name, spec in (data.get("groups") or {}).items():
            spec = spec or {}
            groups.append(HostGroup(
                name=name,
                hosts=list(spec.get("hosts") or []),
                children=list(spec.get("children") or []),
            ))
        return cls(hosts, groups)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Inventory":
        """Load an inventory from a YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Inventory not found: {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        inventory = cls.from_dict(data)
        logger.debug(f"Loaded inventory from {path}: {len(inventory.hosts)} host(s), {len(inventory.groups)} group(s)")
        return inventory
