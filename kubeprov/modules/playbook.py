"""Playbook loading and static validation.

A playbook is a YAML list of plays::

    - name: Install firewall
      hosts: cluster
      become: true
      tasks:
        - name: open API server port
          firewall: {port: 6443/tcp, state: enabled}
          notify: reload firewall
      handlers:
        - name: reload firewall
          command: firewall-cmd --reload

Each task carries exactly one resource key (``package``, ``firewall``,
``template``, ...); ``shell`` is accepted as an alias of ``command`` and a
plain string given to either becomes its ``cmd``.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from .errors import PlaybookError
from .models import Play, ResourceKind, Task
from .resources import get_controller

logger = logging.getLogger("kubeprov.playbook")

PLAYBOOK_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "playbooks")
SITE_PLAYBOOK = os.path.join(PLAYBOOK_DIR, "site.yml")

TASK_KEYS = ("name", "notify", "become", "local", "register", "timeout")
PLAY_KEYS = ("name", "hosts", "become", "vars", "tasks", "handlers")
KIND_ALIASES = {"shell": ResourceKind.COMMAND}


def _is_templated(value: Any) -> bool:
    if isinstance(value, str):
        return "{{" in value or "{%" in value
    if isinstance(value, dict):
        return any(_is_templated(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_is_templated(v) for v in value)
    return False


def _resolve_kind(key: str) -> Optional[ResourceKind]:
    if key in KIND_ALIASES:
        return KIND_ALIASES[key]
    try:
        return ResourceKind(key)
    except ValueError:
        return None


def parse_task(data: Dict[str, Any], where: str) -> Task:
    """Build a Task from its YAML mapping.

    Parameters that contain Jinja2 expressions are validated after rendering,
    when the task runs; everything else is validated here.
    """
    if not isinstance(data, dict):
        raise PlaybookError(f"{where}: task must be a mapping, got {type(data).__name__}")

    module_keys = [k for k in data if k not in TASK_KEYS]
    if len(module_keys) != 1:
        found = ", ".join(module_keys) or "none"
        raise PlaybookError(f"{where}: expected exactly one resource key, found {found}")

    key = module_keys[0]
    kind = _resolve_kind(key)
    if kind is None:
        raise PlaybookError(f"{where}: unknown resource kind '{key}'")

    params = data[key]
    if isinstance(params, str):
        if kind != ResourceKind.COMMAND:
            raise PlaybookError(f"{where}: '{key}' needs a mapping of parameters")
        params = {"cmd": params}
    elif params is None:
        params = {}
    elif not isinstance(params, dict):
        raise PlaybookError(f"{where}: '{key}' parameters must be a mapping")

    name = str(data.get("name") or f"{key} {params.get('name', '')}".strip())
    notify = data.get("notify") or ()
    if isinstance(notify, str):
        notify = (notify,)

    timeout = data.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or timeout < 1):
        raise PlaybookError(f"{where}: timeout must be a positive integer")

    if not _is_templated(params):
        get_controller(kind).validate(params)

    return Task(
        name=name,
        kind=kind,
        params=dict(params),
        notify=tuple(str(n) for n in notify),
        become=data.get("become"),
        local=bool(data.get("local", False)),
        register=data.get("register"),
        timeout=timeout,
    )


def check_handlers(play: Play) -> None:
    """Every notified handler must be defined by the play.

    Raises:
        PlaybookError: On the first notification without a matching handler
    """
    names = [h.name for h in play.handlers]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise PlaybookError(f"Play '{play.name}' defines handler(s) more than once: {', '.join(sorted(duplicates))}")
    for task in play.tasks:
        for name in task.notify:
            if name not in names:
                raise PlaybookError(
                    f"Task '{task.name}' in play '{play.name}' notifies undefined handler '{name}'"
                )


def parse_play(data: Dict[str, Any], index: int = 0) -> Play:
    if not isinstance(data, dict):
        raise PlaybookError(f"Play #{index + 1} must be a mapping")
    unknown = [k for k in data if k not in PLAY_KEYS]
    if unknown:
        raise PlaybookError(f"Play #{index + 1}: unknown key(s): {', '.join(unknown)}")
    if not data.get("hosts"):
        raise PlaybookError(f"Play #{index + 1}: 'hosts' is required")

    name = str(data.get("name") or data["hosts"])
    tasks = tuple(
        parse_task(t, f"{name} / task #{i + 1}") for i, t in enumerate(data.get("tasks") or [])
    )
    handlers = tuple(
        parse_task(h, f"{name} / handler #{i + 1}") for i, h in enumerate(data.get("handlers") or [])
    )
    play = Play(
        name=name,
        hosts=str(data["hosts"]),
        tasks=tasks,
        handlers=handlers,
        become=bool(data.get("become", False)),
        vars=dict(data.get("vars") or {}),
    )
    check_handlers(play)
    return play


def parse_playbook(data: Any) -> List[Play]:
    if not isinstance(data, list):
        raise PlaybookError(f"Invalid playbook format: expected a list of plays, got {type(data).__name__}")
    return [parse_play(p, i) for i, p in enumerate(data)]


def load_playbook(path: Optional[Union[str, Path]] = None) -> List[Play]:
    """Load plays from a YAML file (default: the packaged site.yml)."""
    path = Path(path or SITE_PLAYBOOK).expanduser()
    if not path.exists():
        raise PlaybookError(f"Playbook not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PlaybookError(f"Invalid YAML in {path}: {e}") from e
    plays = parse_playbook(data or [])
    logger.debug(f"Loaded {len(plays)} play(s) from {path}")
    return plays


def play_groups(plays: Iterable[Play]) -> List[str]:
    """Distinct host groups targeted by the plays, in order."""
    groups: List[str] = []
    for play in plays:
        if play.hosts not in groups:
            groups.append(play.hosts)
    return groups
