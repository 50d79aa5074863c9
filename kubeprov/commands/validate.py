"""Offline checks of inventory, variables and playbook; nothing is contacted."""
from typing import List, Optional

import typer

from kubeprov.modules.bootstrap import CONTROL_GROUP, WORKERS_GROUP
from kubeprov.modules.errors import KubeprovError
from kubeprov.modules.playbook import load_playbook, play_groups

from .common import InventoryOption, VarOption, VarsFileOption, console, fatal, fail, load_inputs


def validate_cmd(
    inventory: str = InventoryOption,
    vars_file: Optional[str] = VarsFileOption,
    var: Optional[List[str]] = VarOption,
    playbook: Optional[str] = typer.Option(None, "--playbook", "-p", help="Playbook to validate instead of the packaged site.yml"),
):
    """Validate inventory, variables and playbook without touching any host."""
    try:
        inv, variables = load_inputs(inventory, vars_file, var)
        console.print(f"✅ Inventory: {len(inv.hosts)} host(s), {len(inv.groups)} group(s)")
        console.print(f"✅ Variables: advertise_address={variables['advertise_address']} "
                      f"pod_network_cidr={variables['pod_network_cidr']}")

        plays = load_playbook(playbook)
        groups = play_groups(plays) + [CONTROL_GROUP, WORKERS_GROUP]
        for group in dict.fromkeys(groups):
            hosts = inv.resolve(group)
            console.print(f"✅ Group '{group}': {', '.join(h.name for h in hosts) or '(empty)'}")
        console.print(f"✅ Playbook: {len(plays)} play(s), {sum(len(p.tasks) for p in plays)} task(s)")
    except (KubeprovError, FileNotFoundError) as e:
        fatal(e)

    if len(inv.resolve(CONTROL_GROUP)) != 1:
        fail(f"Group '{CONTROL_GROUP}' must contain exactly one host")
    console.print("[bold green]🎉 Configuration is valid[/bold green]")
