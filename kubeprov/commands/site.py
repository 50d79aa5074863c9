from typing import List, Optional

import typer

from kubeprov.modules.errors import DependencyUnmet, KubeprovError
from kubeprov.modules.site import run_site
from kubeprov.modules.ssh import ConnectionPool
from kubeprov.modules.summary import print_report

from .common import InventoryOption, VarOption, VarsFileOption, console, fatal, load_inputs


def site_cmd(
    inventory: str = InventoryOption,
    vars_file: Optional[str] = VarsFileOption,
    var: Optional[List[str]] = VarOption,
    playbook: Optional[str] = typer.Option(None, "--playbook", "-p", help="Playbook to run instead of the packaged site.yml"),
    bootstrap: bool = typer.Option(True, "--bootstrap/--no-bootstrap", help="Initialize and join the cluster after provisioning"),
    reset_control: bool = typer.Option(False, "--reset-control", help="Run 'kubeadm reset -f' on the control node before init"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", help="Hosts provisioned in parallel"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Per-task timeout in seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show one row per task"),
):
    """Provision every host and bootstrap the cluster."""
    connections = ConnectionPool()
    try:
        inv, variables = load_inputs(inventory, vars_file, var)
        report = run_site(
            inv,
            variables,
            connections=connections,
            playbook=playbook,
            bootstrap=bootstrap,
            reset_control=reset_control,
            max_workers=max_workers,
            task_timeout=timeout,
        )
    except DependencyUnmet as e:
        if e.report is not None:
            print_report(e.report, console=console, verbose=verbose)
        fatal(e)
    except (KubeprovError, FileNotFoundError) as e:
        fatal(e)
    finally:
        connections.close_all()

    print_report(report, console=console, verbose=verbose)
    if report.failed_hosts:
        raise typer.Exit(code=1)
