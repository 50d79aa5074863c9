import re
import shlex
import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from kubeprov.modules.engine import PlaybookExecutor
from kubeprov.modules.errors import TaskTimeout
from kubeprov.modules.inventory import Inventory
from kubeprov.modules.resources import ExecutionContext
from kubeprov.modules.ssh import FileStat
from kubeprov.modules.templating import TemplateRenderer
from kubeprov.modules.variables import build_variables

INIT_OUTPUT = """[init] Using Kubernetes version: v1.28.2
[preflight] Running pre-flight checks
Your Kubernetes control-plane has initialized successfully!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef \\
\t--discovery-token-ca-cert-hash sha256:0123456789
"""

JOIN_COMMAND = (
    "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:0123456789"
)

INVENTORY = {
    "hosts": {
        "cp-1": {"address": "10.0.0.1"},
        "worker-1": {"address": "10.0.0.2"},
        "worker-2": {"address": "10.0.0.3"},
    },
    "groups": {
        "control": {"hosts": ["cp-1"]},
        "workers": {"hosts": ["worker-1", "worker-2"]},
        "cluster": {"children": ["control", "workers"]},
    },
}


class FakeHost:
    """In-memory machine that understands the commands the controllers send.

    Emulates dpkg/apt, firewalld, systemd and a flat filesystem. Anything else
    is a raw command: it succeeds with empty output unless a scripted
    response matches it.
    """

    def __init__(self, name: str = "node-1"):
        self.name = name
        self.files: Dict[str, str] = {}
        self.modes: Dict[str, FileStat] = {}
        self.installed: Dict[str, str] = {}
        self.candidates: Dict[str, str] = {}
        self.unavailable: Set[str] = set()
        self.held: Set[str] = set()
        self.ports: Dict[str, Set[str]] = {"runtime": set(), "permanent": set()}
        self.enabled: Set[str] = set()
        self.active: Set[str] = set()
        self.commands: List[str] = []
        self.become_flags: List[bool] = []
        self.responses: List[Tuple[str, int, str, str]] = []
        self.failures: Dict[str, Tuple[int, str]] = {}
        self.timeouts: Set[str] = set()
        self.lock = threading.Lock()

    # scripting helpers

    def respond(self, fragment: str, stdout: str = "", rc: int = 0, stderr: str = "") -> None:
        self.responses.append((fragment, rc, stdout, stderr))

    def fail_on(self, fragment: str, rc: int = 1, stderr: str = "boom") -> None:
        self.failures[fragment] = (rc, stderr)

    def time_out_on(self, fragment: str) -> None:
        self.timeouts.add(fragment)

    def ran(self, fragment: str) -> List[str]:
        return [c for c in self.commands if fragment in c]

    def candidate(self, name: str) -> Optional[str]:
        if name in self.unavailable:
            return None
        return self.candidates.get(name, "1.0")

    # connection surface

    def execute(self, command: str, become: bool = False, timeout: Optional[float] = None,
                stdin: Optional[str] = None) -> Tuple[int, str, str]:
        with self.lock:
            self.commands.append(command)
            self.become_flags.append(become)
        for fragment in self.timeouts:
            if fragment in command:
                raise TaskTimeout(f"Command timed out after {timeout} seconds on {self.name}: {command}")
        for fragment, (rc, err) in self.failures.items():
            if fragment in command:
                return rc, "", err
        for pattern, handler in self._dispatch():
            match = re.match(pattern, command)
            if match:
                return handler(*match.groups())
        for fragment, rc, out, err in self.responses:
            if fragment in command:
                return rc, out, err
        return 0, "", ""

    def read_file(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[str]:
        return self.files.get(path)

    def write_file(self, path: str, content: str, become: bool = False, owner: Optional[str] = None,
                   group: Optional[str] = None, mode: Optional[str] = None,
                   timeout: Optional[float] = None) -> None:
        with self.lock:
            self.commands.append(f"write {path}")
        self.files[path] = content
        current = self.modes.get(path, FileStat("root", "root", "644"))
        self.modes[path] = FileStat(owner or current.owner, group or current.group, mode or current.mode)

    def stat(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[FileStat]:
        if path not in self.files:
            return None
        return self.modes.get(path, FileStat("root", "root", "644"))

    def close(self) -> None:
        pass

    # command emulation

    def _dispatch(self):
        return [
            (r"^dpkg-query -W -f='\$\{Status\}' (\S+)$", self._dpkg_status),
            (r"^apt-cache policy (\S+)$", self._policy),
            (r"^apt-mark showhold (\S+)$", self._showhold),
            (r"^DEBIAN_FRONTEND=noninteractive apt-get -s upgrade$", self._simulate_upgrade),
            (r"^apt-get update$", lambda: (0, "", "")),
            (r"^DEBIAN_FRONTEND=noninteractive apt-get -y upgrade$", self._upgrade_all),
            (r"^DEBIAN_FRONTEND=noninteractive apt-get (install|remove) -y (.+)$", self._apt_get),
            (r"^apt-mark (hold|unhold) (.+)$", self._mark),
            (r"^firewall-cmd( --permanent)?(?: --zone=\S+)? --(query|add|remove)-port=(\S+)$", self._firewall),
            (r"^systemctl (is-enabled|is-active) (\S+)$", self._systemctl_query),
            (r"^systemctl daemon-reload$", lambda: (0, "", "")),
            (r"^systemctl (enable|disable|start|stop|restart|reload) (\S+)$", self._systemctl),
            (r"^curl -fsSL (\S+) -o (\S+)$", self._curl),
            (r"^chmod (\d+) (\S+)$", self._chmod),
        ]

    def _dpkg_status(self, name):
        if name in self.installed:
            return 0, "install ok installed", ""
        return 1, "", f"dpkg-query: no packages found matching {name}"

    def _policy(self, name):
        candidate = self.candidate(name) or "(none)"
        installed = self.installed.get(name, "(none)")
        return 0, f"{name}:\n  Installed: {installed}\n  Candidate: {candidate}\n", ""

    def _showhold(self, name):
        return 0, f"{name}\n" if name in self.held else "", ""

    def _upgradable(self) -> Dict[str, str]:
        """Installed, unheld packages with a newer candidate."""
        result = {}
        for name, version in sorted(self.installed.items()):
            candidate = self.candidate(name)
            if candidate and candidate != version and name not in self.held:
                result[name] = candidate
        return result

    def _simulate_upgrade(self):
        lines = ["Reading package lists..."]
        for name, candidate in self._upgradable().items():
            lines.append(f"Inst {name} [{self.installed[name]}] ({candidate} Ubuntu:22.04/jammy [amd64])")
        return 0, "\n".join(lines) + "\n", ""

    def _upgrade_all(self):
        self.installed.update(self._upgradable())
        return 0, "", ""

    def _apt_get(self, action, names):
        for name in shlex.split(names):
            if action == "install":
                if not self.candidate(name):
                    return 100, "", f"E: Unable to locate package {name}"
                self.installed[name] = self.candidate(name)
            else:
                self.installed.pop(name, None)
        return 0, "", ""

    def _mark(self, action, names):
        for name in shlex.split(names):
            if action == "hold":
                self.held.add(name)
            else:
                self.held.discard(name)
        return 0, "", ""

    def _firewall(self, permanent, action, port):
        ports = self.ports["permanent" if permanent else "runtime"]
        if action == "query":
            return (0, "yes", "") if port in ports else (1, "no", "")
        if action == "add":
            ports.add(port)
        else:
            ports.discard(port)
        return 0, "success", ""

    def _systemctl_query(self, query, unit):
        if query == "is-enabled":
            return (0, "enabled\n", "") if unit in self.enabled else (1, "disabled\n", "")
        return (0, "active\n", "") if unit in self.active else (3, "inactive\n", "")

    def _systemctl(self, action, unit):
        if action == "enable":
            self.enabled.add(unit)
        elif action == "disable":
            self.enabled.discard(unit)
        elif action in ("start", "restart", "reload"):
            self.active.add(unit)
        elif action == "stop":
            self.active.discard(unit)
        return 0, "", ""

    def _curl(self, url, path):
        self.files[path] = f"-----BEGIN PGP PUBLIC KEY BLOCK-----\n{url}\n"
        return 0, "", ""

    def _chmod(self, mode, path):
        current = self.modes.get(path, FileStat("root", "root", "644"))
        self.modes[path] = FileStat(current.owner, current.group, mode)
        return 0, "", ""


class FakePool:
    """ConnectionPool stand-in handing out FakeHosts by host name."""

    def __init__(self):
        self.hosts: Dict[str, FakeHost] = {}
        self.localhost = FakeHost("localhost")
        self.closed = False

    def __getitem__(self, name: str) -> FakeHost:
        if name not in self.hosts:
            self.hosts[name] = FakeHost(name)
        return self.hosts[name]

    def get_connection(self, host) -> FakeHost:
        return self[host.name]

    def local(self) -> FakeHost:
        return self.localhost

    def close_all(self) -> None:
        self.closed = True


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def ctx(fake_host, tmp_path):
    """ExecutionContext against a single fake host."""
    renderer = TemplateRenderer([str(tmp_path)])
    return ExecutionContext(
        connection=fake_host,
        host=fake_host.name,
        become=True,
        timeout=30,
        renderer=renderer,
        variables={"greeting": "hello"},
    )


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def inventory():
    return Inventory.from_dict(INVENTORY)


@pytest.fixture
def token_file(tmp_path):
    return str(tmp_path / "cluster" / "token")


@pytest.fixture
def variables(token_file):
    return build_variables({
        "advertise_address": "10.0.0.1",
        "pod_network_cidr": "10.244.0.0/16",
        "token_file": token_file,
    })


@pytest.fixture
def executor(inventory, variables, pool):
    return PlaybookExecutor(inventory, variables, connections=pool, max_workers=4, task_timeout=60)
