import typer
from rich.table import Table

from kubeprov.modules.errors import KubeprovError
from kubeprov.modules.inventory import Inventory

from .common import InventoryOption, console, fatal

app = typer.Typer(help="Inspect the inventory")


@app.command("list")
def list_hosts(inventory: str = InventoryOption):
    """List hosts and the groups they belong to."""
    try:
        inv = Inventory.load(inventory)
        memberships = {name: [] for name in inv.hosts}
        for group in inv.groups:
            for host in inv.resolve(group):
                memberships[host.name].append(group)
    except (KubeprovError, FileNotFoundError) as e:
        fatal(e)

    table = Table(title="Inventory")
    table.add_column("Host", style="cyan")
    table.add_column("Address")
    table.add_column("User")
    table.add_column("Groups")
    for name, host in inv.hosts.items():
        table.add_row(name, f"{host.address}:{host.port}", host.user, ", ".join(memberships[name]))
    console.print(table)


@app.command("resolve")
def resolve_group(
    group: str = typer.Argument(..., help="Group name, or 'all'"),
    inventory: str = InventoryOption,
):
    """Print the hosts a group resolves to, in execution order."""
    try:
        hosts = Inventory.load(inventory).resolve(group)
    except (KubeprovError, FileNotFoundError) as e:
        fatal(e)
    for host in hosts:
        typer.echo(f"{host.name}\t{host.address}")
