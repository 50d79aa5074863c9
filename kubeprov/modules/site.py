"""Full provisioning run: the site playbook, then the cluster bootstrap."""
import logging
from pathlib import Path
from typing import Optional, Union

from .bootstrap import ClusterBootstrap, TokenStore
from .engine import PlaybookExecutor
from .errors import DependencyUnmet
from .inventory import Inventory
from .models import RunReport
from .playbook import load_playbook
from .ssh import ConnectionPool
from .templating import TemplateRenderer
from .variables import Variables

logger = logging.getLogger("kubeprov.site")


def run_site(
    inventory: Inventory,
    variables: Variables,
    connections: Optional[ConnectionPool] = None,
    playbook: Optional[Union[str, Path]] = None,
    bootstrap: bool = True,
    reset_control: bool = False,
    renderer: Optional[TemplateRenderer] = None,
    max_workers: Optional[int] = None,
    task_timeout: Optional[int] = None,
    token_store: Optional[TokenStore] = None,
) -> RunReport:
    """Provision every host, then bootstrap the cluster.

    The bootstrap is skipped when any host failed during provisioning, so a
    half-provisioned node is never initialized or joined.

    Raises:
        PlaybookError, ResolutionError: Before any task runs
        DependencyUnmet: If the control phase fails; ``report`` is attached
    """
    plays = load_playbook(playbook)
    executor = PlaybookExecutor(
        inventory,
        variables,
        connections=connections,
        renderer=renderer,
        max_workers=max_workers,
        task_timeout=task_timeout,
    )

    logger.info(f"🚀 Provisioning {len(inventory.hosts)} host(s) with {len(plays)} play(s)")
    report = executor.run(plays)

    if not bootstrap:
        return report
    if report.failed_hosts:
        logger.error(
            f"❌ Skipping cluster bootstrap: provisioning failed on {', '.join(report.failed_hosts)}"
        )
        return report

    coordinator = ClusterBootstrap(executor, variables, token_store=token_store, reset_control=reset_control)
    try:
        result = coordinator.run()
    except DependencyUnmet as e:
        if e.result is not None:
            report.extend(e.result.report)
        e.report = report
        raise
    report.extend(result.report)
    return report
