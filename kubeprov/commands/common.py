"""Helpers shared by the CLI commands."""
from typing import Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.markup import escape

from kubeprov.modules.errors import ConfigurationError, KubeprovError
from kubeprov.modules.inventory import Inventory
from kubeprov.modules.variables import Variables, load_variables

console = Console()

InventoryOption = typer.Option("inventory.yml", "--inventory", "-i", help="Inventory YAML file")
VarsFileOption = typer.Option(None, "--vars", "-e", help="Cluster variables YAML file")
VarOption = typer.Option(None, "--var", help="Variable override as KEY=VALUE (repeatable)")


def parse_var_pairs(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a dict."""
    overrides = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ConfigurationError(f"Invalid --var '{pair}', expected KEY=VALUE")
        key, value = pair.split("=", 1)
        if not key.strip():
            raise ConfigurationError(f"Invalid --var '{pair}', empty key")
        overrides[key.strip()] = value
    return overrides


def load_inputs(
    inventory_path: str,
    vars_file: Optional[str],
    var_pairs: Optional[List[str]],
) -> Tuple[Inventory, Variables]:
    inventory = Inventory.load(inventory_path)
    variables = load_variables(vars_file, overrides=parse_var_pairs(var_pairs))
    return inventory, variables


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[bold red]❌ {escape(message)}[/bold red]")
    raise typer.Exit(code=1)


def fatal(error: Exception) -> None:
    if isinstance(error, FileNotFoundError):
        fail(str(error))
    if isinstance(error, KubeprovError):
        fail(f"{type(error).__name__}: {error}")
    raise error
