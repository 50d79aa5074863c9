from typing import List, Optional

import typer
from rich.markup import escape

from kubeprov.modules.bootstrap import ClusterBootstrap
from kubeprov.modules.engine import PlaybookExecutor
from kubeprov.modules.errors import DependencyUnmet, KubeprovError
from kubeprov.modules.ssh import ConnectionPool
from kubeprov.modules.summary import print_bootstrap

from .common import InventoryOption, VarOption, VarsFileOption, console, fatal, load_inputs


def bootstrap_cmd(
    inventory: str = InventoryOption,
    vars_file: Optional[str] = VarsFileOption,
    var: Optional[List[str]] = VarOption,
    workers_only: bool = typer.Option(False, "--workers-only", help="Only join workers using the stored token artifact"),
    reset_control: bool = typer.Option(False, "--reset-control", help="Run 'kubeadm reset -f' on the control node before init"),
    clear_token: bool = typer.Option(False, "--clear-token", help="Discard the stored token artifact and exit"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Per-task timeout in seconds"),
):
    """Initialize the control plane and join the workers."""
    connections = ConnectionPool()
    try:
        inv, variables = load_inputs(inventory, vars_file, var)
        executor = PlaybookExecutor(inv, variables, connections=connections, task_timeout=timeout)
        coordinator = ClusterBootstrap(executor, variables, reset_control=reset_control)
        if clear_token:
            if coordinator.token_store.clear():
                console.print(f"🗑️  Removed token artifact {escape(coordinator.token_store.path)}")
            else:
                console.print(f"No token artifact at {escape(coordinator.token_store.path)}")
            return
        if workers_only:
            result = coordinator.run_workers()
        else:
            result = coordinator.run()
    except DependencyUnmet as e:
        if e.result is not None:
            print_bootstrap(e.result, console=console)
        fatal(e)
    except (KubeprovError, FileNotFoundError) as e:
        fatal(e)
    finally:
        connections.close_all()

    print_bootstrap(result, console=console)
    if not result.ok:
        raise typer.Exit(code=1)
