"""Two-phase cluster bootstrap.

The control phase initializes the control plane and stores the ``kubeadm
init`` output (the token artifact) on the orchestrating machine. The worker
phase joins every worker using the join command found at the end of that
artifact. The worker phase never starts unless the control phase finished
successfully and the artifact exists.
"""
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .engine import PlaybookExecutor
from .errors import ConfigurationError, DependencyUnmet
from .models import Play, PlayResult, ResourceKind, RunReport, Task
from .variables import Variables

logger = logging.getLogger("kubeprov.bootstrap")

CONTROL_GROUP = "control"
WORKERS_GROUP = "workers"
INIT_TASK = "initialize control plane"
JOIN_TOKEN_PATH = "/root/join_token"
ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"


class TokenStore:
    """The token artifact on the orchestrating machine."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def read(self) -> Optional[str]:
        if not self.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def write(self, content: str) -> None:
        """Atomically replace the artifact; readers never see a partial file."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".kubeprov-token-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(f"🔑 Stored join token artifact at {self.path}")

    def clear(self) -> bool:
        """Discard the artifact; False when there was none."""
        if not self.exists():
            return False
        os.unlink(self.path)
        logger.info(f"🗑️  Removed join token artifact {self.path}")
        return True


def extract_join_command(artifact: str) -> str:
    """Return the ``kubeadm join`` command printed at the end of ``kubeadm init``.

    kubeadm prints the command on the last two lines, the first ending with a
    backslash continuation. Continuations are folded into one line.

    Raises:
        DependencyUnmet: If the artifact holds no join command
    """
    lines = [line.rstrip() for line in artifact.splitlines() if line.strip()]
    start = None
    for index in range(len(lines) - 1, -1, -1):
        if "kubeadm join" in lines[index]:
            start = index
            break
    if start is None:
        raise DependencyUnmet("Token artifact does not contain a 'kubeadm join' command")

    parts = []
    for line in lines[start:]:
        continued = line.endswith("\\")
        parts.append(line.rstrip("\\").strip())
        if not continued:
            break
    return " ".join(p for p in parts if p)


@dataclass
class BootstrapResult:
    """Outcome of a bootstrap run."""
    control_succeeded: List[str] = field(default_factory=list)
    workers_succeeded: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    report: RunReport = field(default_factory=RunReport)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record(self, play: PlayResult, succeeded: List[str]) -> None:
        self.report.add(play)
        for name, run in play.hosts.items():
            if run.failed:
                failure = run.failure
                self.failures[name] = f"{failure.task}: {failure.message}" if failure else "failed"
            else:
                succeeded.append(name)


class ClusterBootstrap:
    """Initializes the control plane, then joins the workers."""

    def __init__(
        self,
        executor: PlaybookExecutor,
        variables: Optional[Variables] = None,
        token_store: Optional[TokenStore] = None,
        reset_control: bool = False,
    ):
        self.executor = executor
        self.variables = variables if variables is not None else executor.variables
        self.token_store = token_store or TokenStore(self.variables["token_file"])
        self.reset_control = reset_control

    def control_play(self) -> Play:
        tasks = []
        if self.reset_control:
            tasks.append(Task(
                name="reset control plane",
                kind=ResourceKind.COMMAND,
                params={"cmd": "kubeadm reset -f"},
            ))
        tasks.extend([
            Task(
                name=INIT_TASK,
                kind=ResourceKind.COMMAND,
                params={"cmd": (
                    "kubeadm init --apiserver-advertise-address {{ advertise_address }} "
                    "--pod-network-cidr={{ pod_network_cidr }}"
                )},
                register="kubeadm_init",
            ),
            Task(
                name="install admin kubeconfig",
                kind=ResourceKind.COMMAND,
                params={"cmd": (
                    f"mkdir -p $HOME/.kube && sudo cp -f {ADMIN_KUBECONFIG} $HOME/.kube/config "
                    "&& sudo chown $(id -u):$(id -g) $HOME/.kube/config"
                )},
                become=False,
            ),
            Task(
                name="apply network add-on",
                kind=ResourceKind.COMMAND,
                params={"cmd": "kubectl apply -f {{ network_addon_manifest }}"},
                become=False,
            ),
        ])
        return Play(name="Initialize control plane", hosts=CONTROL_GROUP, tasks=tuple(tasks), become=True)

    def worker_play(self, join_command: str) -> Play:
        tasks = (
            Task(
                name="copy join token",
                kind=ResourceKind.COPY,
                params={"src": "{{ token_file }}", "dest": JOIN_TOKEN_PATH, "mode": "600"},
            ),
            Task(
                name="reset node",
                kind=ResourceKind.COMMAND,
                params={"cmd": "kubeadm reset -f"},
            ),
            Task(
                name="join cluster",
                kind=ResourceKind.COMMAND,
                params={"cmd": "{{ join_command }}"},
            ),
        )
        return Play(
            name="Join workers",
            hosts=WORKERS_GROUP,
            tasks=tasks,
            become=True,
            vars={"join_command": join_command},
        )

    def _store_artifact(self, play: PlayResult) -> None:
        for run in play.hosts.values():
            for result in run.results:
                if result.task == INIT_TASK and result.changed:
                    self.token_store.write(result.stdout)
                    return

    def run_control(self, result: Optional[BootstrapResult] = None) -> BootstrapResult:
        """Run the control phase and enforce the completion barrier.

        Raises:
            ConfigurationError: If the control group does not hold exactly one host
            DependencyUnmet: If the control phase failed or produced no artifact
        """
        result = result or BootstrapResult()
        control_hosts = self.executor.inventory.resolve(CONTROL_GROUP)
        if len(control_hosts) != 1:
            raise ConfigurationError(
                f"Group '{CONTROL_GROUP}' must contain exactly one host, found {len(control_hosts)}"
            )

        logger.info(f"🚀 Initializing control plane on {control_hosts[0].name}")
        play = self.executor.run_play(self.control_play())
        if play.ok:
            self._store_artifact(play)
        result.record(play, result.control_succeeded)

        if not play.ok:
            raise DependencyUnmet(
                f"Control phase failed on {', '.join(play.failed_hosts)}; workers will not be joined",
                result=result,
            )
        if not self.token_store.exists():
            raise DependencyUnmet(
                f"Control phase finished but no token artifact exists at {self.token_store.path}",
                result=result,
            )
        return result

    def run_workers(self, result: Optional[BootstrapResult] = None) -> BootstrapResult:
        """Join every worker using the stored artifact.

        Raises:
            DependencyUnmet: If the token artifact is missing
        """
        result = result or BootstrapResult()
        artifact = self.token_store.read()
        if artifact is None:
            raise DependencyUnmet(
                f"No token artifact at {self.token_store.path}; run the control phase first"
            )
        join_command = extract_join_command(artifact)

        workers = self.executor.inventory.resolve(WORKERS_GROUP)
        logger.info(f"🔗 Joining {len(workers)} worker(s)")
        play = self.executor.run_play(self.worker_play(join_command))
        result.record(play, result.workers_succeeded)
        return result

    def run(self) -> BootstrapResult:
        """Control phase, barrier, then worker phase."""
        # Both groups must resolve before anything runs
        self.executor.inventory.resolve(CONTROL_GROUP)
        self.executor.inventory.resolve(WORKERS_GROUP)

        result = self.run_control()
        self.run_workers(result)
        logger.info(
            f"📊 Bootstrap finished: {len(result.control_succeeded)} control, "
            f"{len(result.workers_succeeded)} worker(s) ready, {len(result.failures)} failure(s)"
        )
        return result
