"""Task execution engine.

Plays run in order. Within a play every host runs the task list strictly in
order, hosts run in parallel on a thread pool, and a failure on one host never
affects another. Handlers are flushed per host once every host has finished
its task list.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..config import Config
from .errors import KubeprovError, TaskTimeout
from .inventory import Host, Inventory
from .models import HostRun, Play, PlayResult, RunReport, Task, TaskResult, TaskStatus
from .notify import Notifier
from .playbook import check_handlers
from .resources import ExecutionContext, get_controller
from .ssh import ConnectionPool
from .templating import TemplateRenderer
from .variables import Variables

logger = logging.getLogger("kubeprov.engine")

STATUS_ICONS = {
    TaskStatus.SKIPPED: "⏭️ ",
    TaskStatus.CHANGED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.TIMEOUT: "⏱️ ",
    TaskStatus.NOT_RUN: "⛔",
}


class PlaybookExecutor:
    """Runs plays against inventory hosts."""

    def __init__(
        self,
        inventory: Inventory,
        variables: Variables,
        connections: Optional[ConnectionPool] = None,
        renderer: Optional[TemplateRenderer] = None,
        max_workers: Optional[int] = None,
        task_timeout: Optional[int] = None,
    ):
        self.inventory = inventory
        self.variables = variables
        self.connections = connections or ConnectionPool()
        self.renderer = renderer or TemplateRenderer()
        self.max_workers = max_workers or Config.MAX_WORKERS
        self.task_timeout = task_timeout or Config.TASK_TIMEOUT

    def resolve(self, plays: Sequence[Play]) -> List[Tuple[Play, List[Host]]]:
        """Validate handlers and resolve every play's group up front.

        Raises:
            PlaybookError: If a task notifies an undefined handler
            ResolutionError: If any group is unknown
        """
        for play in plays:
            check_handlers(play)
        return [(play, self.inventory.resolve(play.hosts)) for play in plays]

    def run(self, plays: Sequence[Play]) -> RunReport:
        """Run plays in order; no task runs unless every group resolves.

        A host that fails in one play takes no part in the plays after it.
        """
        targets = self.resolve(plays)
        report = RunReport()
        for play, hosts in targets:
            report.add(self._run_play(play, hosts, excluded=set(report.failed_hosts)))
        return report

    def run_play(self, play: Play) -> PlayResult:
        check_handlers(play)
        return self._run_play(play, self.inventory.resolve(play.hosts))

    def _run_play(self, play: Play, hosts: List[Host], excluded: Optional[Set[str]] = None) -> PlayResult:
        result = PlayResult(name=play.name, group=play.hosts)
        logger.info(f"▶️  PLAY [{play.name}] on '{play.hosts}' ({len(hosts)} host(s))")

        runs: Dict[str, HostRun] = {}
        for host in hosts:
            if excluded and host.name in excluded:
                logger.warning(f"⚠️  [{host.name}] failed in an earlier play, skipping '{play.name}'")
                runs[host.name] = HostRun(host=host.name, results=[
                    TaskResult(task=t.name, host=host.name, status=TaskStatus.NOT_RUN,
                               message="host failed in an earlier play")
                    for t in play.tasks
                ])
        active = [host for host in hosts if host.name not in runs]

        if not active:
            if not hosts:
                logger.warning(f"⚠️  Group '{play.hosts}' has no hosts, skipping play '{play.name}'")
            result.hosts.update(runs)
            return result

        notifiers: Dict[str, Notifier] = {}
        registered: Dict[str, Dict[str, Any]] = {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(active))) as pool:
            future_to_host = {
                pool.submit(self._run_tasks, play, host): host for host in active
            }
            for future in as_completed(future_to_host):
                host = future_to_host[future]
                runs[host.name], notifiers[host.name], registered[host.name] = future.result()

        # Handlers only start once every host has finished its task list
        flushable = []
        for host in active:
            run = runs[host.name]
            if run.failed:
                run.dropped_handlers = notifiers[host.name].drop()
            elif notifiers[host.name]:
                flushable.append(host)

        if flushable:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(flushable))) as pool:
                future_to_host = {
                    pool.submit(
                        notifiers[host.name].flush,
                        lambda name, host=host: self._run_handler(play, host, name, registered[host.name]),
                    ): host
                    for host in flushable
                }
                for future in as_completed(future_to_host):
                    host = future_to_host[future]
                    runs[host.name].handler_results = future.result()

        for host in hosts:
            result.hosts[host.name] = runs[host.name]

        failed = result.failed_hosts
        if failed:
            logger.error(f"❌ PLAY [{play.name}] failed on {len(failed)} host(s): {', '.join(failed)}")
        else:
            logger.info(f"✅ PLAY [{play.name}] completed on {len(active)} host(s)")
        return result

    def _run_tasks(self, play: Play, host: Host) -> Tuple[HostRun, Notifier, Dict[str, Any]]:
        """Run the play's task list on one host, stopping at the first failure."""
        run = HostRun(host=host.name)
        notifier = Notifier(host.name)
        registered: Dict[str, Any] = {}

        for index, task in enumerate(play.tasks):
            result = self._execute(play, host, task, registered)
            run.results.append(result)
            if task.register:
                registered[task.register] = result.as_registered()

            if result.failed:
                for remaining in play.tasks[index + 1:]:
                    run.results.append(TaskResult(
                        task=remaining.name,
                        host=host.name,
                        status=TaskStatus.NOT_RUN,
                        message=f"'{task.name}' failed",
                    ))
                break

            if result.changed:
                for name in task.notify:
                    notifier.notify(name)

        return run, notifier, registered

    def _run_handler(self, play: Play, host: Host, name: str, registered: Dict[str, Any]) -> TaskResult:
        handler = play.handler(name)
        return self._execute(play, host, handler, registered, is_handler=True)

    def context_for(self, play: Play, host: Host, registered: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Variables visible to a task on one host, lowest precedence first."""
        context: Dict[str, Any] = dict(self.variables)
        context.update(play.vars)
        context.update(host.vars)
        context.update(registered or {})
        context["inventory_hostname"] = host.name
        return context

    def _execute(
        self,
        play: Play,
        host: Host,
        task: Task,
        registered: Dict[str, Any],
        is_handler: bool = False,
    ) -> TaskResult:
        """Run one task on one host: render, check, then converge if needed."""
        started = time.monotonic()
        label = "HANDLER" if is_handler else "TASK"
        result = TaskResult(task=task.name, host=host.name, status=TaskStatus.FAILED, handler=is_handler)

        try:
            controller = get_controller(task.kind)
            context = self.context_for(play, host, registered)
            params = self.renderer.render_params(task.params, context)
            controller.validate(params)

            ctx = ExecutionContext(
                connection=self.connections.local() if task.local else self.connections.get_connection(host),
                host=host.name,
                become=task.elevated(play.become),
                timeout=task.timeout or self.task_timeout,
                renderer=self.renderer,
                variables=context,
            )
            state = controller.check(ctx, params)
            if state.in_sync:
                result.status = TaskStatus.SKIPPED
                result.message = state.detail
            else:
                logger.debug(f"[{host.name}] {task.name}: {state.detail}")
                applied = controller.converge(ctx, params)
                result.status = TaskStatus.CHANGED if applied.changed else TaskStatus.SKIPPED
                result.message = applied.message
                result.rc = applied.rc
                result.stdout = applied.stdout
                result.stderr = applied.stderr
        except TaskTimeout as e:
            result.status = TaskStatus.TIMEOUT
            result.message = str(e)
        except KubeprovError as e:
            result.message = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in '{task.name}' on {host.name}")
            result.message = f"{type(e).__name__}: {e}"

        result.duration = time.monotonic() - started
        icon = STATUS_ICONS[result.status]
        line = f"{icon} {label} [{task.name}] {host.name}: {result.status.value}"
        if result.failed:
            logger.error(f"{line} - {result.message}")
        else:
            logger.info(line)
        return result
