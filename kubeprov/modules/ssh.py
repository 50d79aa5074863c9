"""
Remote execution channel.

Every resource controller talks to a target through the same small surface:
``execute``, ``read_file``, ``write_file`` and ``stat``. ``SSHConnection`` does
this over paramiko, ``LocalConnection`` against the orchestrating machine
itself (used by tasks marked ``local``).
"""
import logging
import os
import shlex
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import paramiko
from paramiko.ssh_exception import (
    AuthenticationException,
    NoValidConnectionsError,
    SSHException,
)

from ..config import Config
from ..logging import redact_command
from .errors import RemoteExecutionError, TaskTimeout
from .inventory import Host

logger = logging.getLogger("kubeprov.ssh")

CommandResult = Tuple[int, str, str]

POLL_INTERVAL = 0.1
RECV_SIZE = 32768


@dataclass(frozen=True)
class FileStat:
    """Ownership and permission bits of a file."""
    owner: str
    group: str
    mode: str  # octal string, e.g. '644'


def _wrap(command: str, become: bool, password: bool = False) -> str:
    """Run the command through bash, optionally under sudo.

    With ``password`` sudo reads the become password from the first line of stdin.
    """
    if become and password:
        return f"sudo -S -p '' bash -c {shlex.quote(command)}"
    if become:
        return f"sudo -n bash -c {shlex.quote(command)}"
    return f"bash -c {shlex.quote(command)}"


def _write_command(path: str, owner: Optional[str], group: Optional[str], mode: Optional[str]) -> str:
    """Shell fragment that stores stdin at ``path`` and applies ownership."""
    quoted = shlex.quote(path)
    parts = [
        f"mkdir -p {shlex.quote(os.path.dirname(path) or '.')}",
        f"cat > {quoted}",
    ]
    if mode:
        parts.append(f"chmod {shlex.quote(str(mode))} {quoted}")
    if owner or group:
        parts.append(f"chown {shlex.quote((owner or '') + (':' + group if group else ''))} {quoted}")
    return " && ".join(parts)


def _parse_stat(output: str) -> Optional[FileStat]:
    parts = output.strip().split()
    if len(parts) != 3:
        return None
    return FileStat(owner=parts[0], group=parts[1], mode=parts[2])


class SSHConnection:
    """SSH connection to a single host using paramiko."""

    def __init__(self, host: Host, timeout: int = None):
        """Initialize SSH connection.

        Args:
            host: Inventory host to connect to
            timeout: Connection timeout in seconds (default: Config.SSH_TIMEOUT)
        """
        self.host = host
        self.name = host.name
        self.timeout = timeout or Config.SSH_TIMEOUT
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _key_path(self) -> Optional[str]:
        key_path = self.host.key_path or Config.SSH_KEY_PATH
        return os.path.expanduser(key_path) if key_path else None

    def _load_key(self) -> Optional[paramiko.PKey]:
        key_path = self._key_path()
        if not key_path:
            return None
        for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
            try:
                return key_cls.from_private_key_file(key_path)
            except SSHException:
                continue
        raise RemoteExecutionError(f"Unsupported private key format for {key_path}")

    def _connect(self) -> paramiko.SSHClient:
        """Open the underlying client on first use."""
        with self._lock:
            if self._client is not None:
                transport = self._client.get_transport()
                if transport and transport.is_active():
                    return self._client
                self._client.close()
                self._client = None

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            logger.debug(f"Connecting to {self.host.user}@{self.host.address}:{self.host.port}")
            try:
                client.connect(
                    hostname=self.host.address,
                    port=self.host.port,
                    username=self.host.user,
                    pkey=self._load_key(),
                    timeout=self.timeout,
                    allow_agent=True,
                    look_for_keys=self._key_path() is None,
                )
            except (AuthenticationException, NoValidConnectionsError, SSHException, socket.error) as e:
                client.close()
                raise RemoteExecutionError(
                    f"Failed to connect to {self.host.user}@{self.host.address}: {e}"
                ) from e
            self._client = client
            return client

    def execute(
        self,
        command: str,
        become: bool = False,
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        """Execute a command on the remote host.

        Args:
            command: Shell fragment to run
            become: Run the command through sudo
            timeout: Seconds before the call is abandoned with TaskTimeout
            stdin: Optional data written to the command's standard input

        Returns:
            tuple: (exit_code, stdout, stderr)
        """
        client = self._connect()
        password = self.host.become_password if become else None
        final_command = _wrap(command, become, password=bool(password))
        if password:
            stdin = f"{password}\n{stdin or ''}"
        logger.debug(f"[{self.name}] exec: {redact_command(final_command)}")
        deadline = time.monotonic() + timeout if timeout else None
        channel = None
        try:
            chan_stdin, stdout, _ = client.exec_command(final_command, timeout=timeout)
            channel = stdout.channel
            if stdin is not None:
                chan_stdin.write(stdin)
                chan_stdin.flush()
                channel.shutdown_write()
            out, err = self._collect(channel, deadline)
            exit_code = channel.recv_exit_status()
        except socket.timeout as e:
            # Closing the channel hangs up the remote command
            if channel is not None:
                channel.close()
            raise TaskTimeout(
                f"Command timed out after {timeout or 0:.0f} seconds on {self.name}: {redact_command(command)}"
            ) from e
        except SSHException as e:
            raise RemoteExecutionError(f"SSH failure on {self.name}: {e}") from e
        return exit_code, out, err

    def _collect(self, channel, deadline: Optional[float]) -> Tuple[str, str]:
        """Read stdout and stderr until the command exits or the deadline passes.

        Output that keeps arriving does not extend the deadline. Expiry raises
        socket.timeout, the same as a blocking recv running out of time.
        """
        out, err = [], []
        while not channel.exit_status_ready():
            busy = False
            if channel.recv_ready():
                out.append(channel.recv(RECV_SIZE))
                busy = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(RECV_SIZE))
                busy = True
            if deadline is not None and time.monotonic() >= deadline:
                raise socket.timeout()
            if not busy:
                time.sleep(POLL_INTERVAL)

        # Drain what is left once the command has exited
        for recv, chunks in ((channel.recv, out), (channel.recv_stderr, err)):
            while True:
                chunk = recv(RECV_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
        return (
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
        )

    def read_file(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[str]:
        """Return the file's text, or None when it does not exist."""
        quoted = shlex.quote(path)
        rc, out, err = self.execute(f"test -f {quoted} && cat {quoted}", become=become, timeout=timeout)
        if rc != 0:
            if err.strip():
                raise RemoteExecutionError(f"Failed to read {path} on {self.name}: {err.strip()}")
            return None
        return out

    def write_file(
        self,
        path: str,
        content: str,
        become: bool = False,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        mode: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        rc, _, err = self.execute(
            _write_command(path, owner, group, mode), become=become, timeout=timeout, stdin=content
        )
        if rc != 0:
            raise RemoteExecutionError(f"Failed to write {path} on {self.name}: {err.strip()}")

    def stat(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[FileStat]:
        quoted = shlex.quote(path)
        rc, out, _ = self.execute(
            f"test -e {quoted} && stat -c '%U %G %a' {quoted}", become=become, timeout=timeout
        )
        if rc != 0:
            return None
        return _parse_stat(out)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


class LocalConnection:
    """Runs tasks on the orchestrating machine instead of a remote host."""

    name = "localhost"

    def execute(
        self,
        command: str,
        become: bool = False,
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        final_command = ["sudo", "-n", "bash", "-c", command] if become else ["bash", "-c", command]
        logger.debug(f"[localhost] exec: {redact_command(command)}")
        try:
            result = subprocess.run(
                final_command,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TaskTimeout(
                f"Command timed out after {timeout or 0:.0f} seconds on localhost: {redact_command(command)}"
            ) from e
        return result.returncode, result.stdout, result.stderr

    def read_file(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[str]:
        if become:
            quoted = shlex.quote(path)
            rc, out, _ = self.execute(f"test -f {quoted} && cat {quoted}", become=True, timeout=timeout)
            return out if rc == 0 else None
        target = Path(path).expanduser()
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def write_file(
        self,
        path: str,
        content: str,
        become: bool = False,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        mode: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if become or owner or group:
            rc, _, err = self.execute(
                _write_command(path, owner, group, mode), become=become, timeout=timeout, stdin=content
            )
            if rc != 0:
                raise RemoteExecutionError(f"Failed to write {path} on localhost: {err.strip()}")
            return
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        if mode:
            os.chmod(target, int(str(mode), 8))

    def stat(self, path: str, become: bool = False, timeout: Optional[float] = None) -> Optional[FileStat]:
        rc, out, _ = self.execute(
            f"test -e {shlex.quote(path)} && stat -c '%U %G %a' {shlex.quote(path)}",
            become=become,
            timeout=timeout,
        )
        if rc != 0:
            return None
        return _parse_stat(out)

    def close(self) -> None:
        pass


class ConnectionPool:
    """Thread-safe cache of one SSH connection per inventory host."""

    def __init__(self, timeout: int = None):
        self.timeout = timeout
        self.connections: Dict[str, SSHConnection] = {}
        self.lock = threading.RLock()
        self._local = LocalConnection()

    def get_connection(self, host: Host) -> SSHConnection:
        """Get (or lazily create) the connection for a host.

        The connection itself only dials on its first command, so a host that
        is unreachable fails inside its first task rather than here.
        """
        with self.lock:
            conn = self.connections.get(host.name)
            if conn is None:
                logger.debug(f"Creating new SSH connection to {host.user}@{host.address}")
                conn = SSHConnection(host, timeout=self.timeout)
                self.connections[host.name] = conn
            return conn

    def local(self) -> LocalConnection:
        return self._local

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self.lock:
            started = time.time()
            for conn in self.connections.values():
                try:
                    conn.close()
                except Exception as e:
                    logger.warning(f"Error closing connection to {conn.name}: {e}")
            logger.debug(f"Closed {len(self.connections)} connection(s) in {time.time() - started:.2f}s")
            self.connections.clear()
