import logging
import socket
from unittest import mock

import pytest

from kubeprov.modules.errors import RemoteExecutionError, TaskTimeout
from kubeprov.modules.inventory import Host
from kubeprov.modules.ssh import (
    ConnectionPool,
    FileStat,
    LocalConnection,
    SSHConnection,
    _parse_stat,
    _wrap,
    _write_command,
)
from paramiko.ssh_exception import SSHException


def test_wrap_uses_sudo_only_when_elevated():
    assert _wrap("echo hi", become=False) == "bash -c 'echo hi'"
    assert _wrap("echo hi", become=True) == "sudo -n bash -c 'echo hi'"


def test_write_command():
    command = _write_command("/etc/docker/daemon.json", "root", "root", "644")
    assert command == (
        "mkdir -p /etc/docker && cat > /etc/docker/daemon.json && "
        "chmod 644 /etc/docker/daemon.json && chown root:root /etc/docker/daemon.json"
    )


def test_parse_stat():
    assert _parse_stat("root root 644\n") == FileStat("root", "root", "644")
    assert _parse_stat("") is None


def connected(host=None):
    conn = SSHConnection(host or Host("cp-1", "10.0.0.1"))
    conn._client = mock.MagicMock()
    return conn, conn._client


def respond(client, out=b"", err=b"", rc=0):
    """Script the next exec_command: the command has already exited."""
    chan_stdin, stdout = mock.MagicMock(), mock.MagicMock()
    channel = stdout.channel
    channel.exit_status_ready.return_value = True
    channel.recv.side_effect = [out, b""] if out else [b""]
    channel.recv_stderr.side_effect = [err, b""] if err else [b""]
    channel.recv_exit_status.return_value = rc
    client.exec_command.return_value = (chan_stdin, stdout, mock.MagicMock())
    return chan_stdin, channel


def test_ssh_execute_returns_rc_and_output():
    conn, client = connected()
    respond(client, out=b"active\n")

    assert conn.execute("systemctl is-active docker", become=True, timeout=10) == (0, "active\n", "")
    client.exec_command.assert_called_once_with("sudo -n bash -c 'systemctl is-active docker'", timeout=10)


def test_ssh_execute_collects_stderr_and_exit_code():
    conn, client = connected()
    respond(client, err=b"E: Unable to locate package nope\n", rc=100)

    assert conn.execute("apt-get install -y nope") == (100, "", "E: Unable to locate package nope\n")


def test_become_password_is_fed_to_sudo():
    conn, client = connected(Host("cp-1", "10.0.0.1", become_password="s3cret"))
    chan_stdin, _ = respond(client)

    conn.write_file("/etc/motd", "hi\n", become=True)

    command = client.exec_command.call_args[0][0]
    assert command.startswith("sudo -S -p '' bash -c ")
    chan_stdin.write.assert_called_once_with("s3cret\nhi\n")

    respond(client)
    conn.execute("id -u", become=False)
    assert client.exec_command.call_args[0][0] == "bash -c 'id -u'"


def test_ssh_execute_writes_stdin():
    conn, client = connected()
    chan_stdin, channel = respond(client)

    conn.write_file("/tmp/x", "content")
    chan_stdin.write.assert_called_once_with("content")
    channel.shutdown_write.assert_called_once()


def test_ssh_timeout_raises_task_timeout():
    conn, client = connected()
    client.exec_command.side_effect = socket.timeout()
    with pytest.raises(TaskTimeout):
        conn.execute("kubeadm init", timeout=1)


def test_streaming_output_does_not_extend_the_timeout():
    conn, client = connected()
    _, channel = respond(client)
    channel.exit_status_ready.return_value = False
    channel.recv_ready.return_value = True
    channel.recv_stderr_ready.return_value = False
    channel.recv.side_effect = None
    channel.recv.return_value = b"[preflight] still pulling images\n"

    with pytest.raises(TaskTimeout, match="timed out"):
        conn.execute("kubeadm init", timeout=0.2)
    channel.close.assert_called_once()


def test_silent_command_times_out_and_closes_the_channel():
    conn, client = connected()
    _, channel = respond(client)
    channel.exit_status_ready.return_value = False
    channel.recv_ready.return_value = False
    channel.recv_stderr_ready.return_value = False

    with pytest.raises(TaskTimeout):
        conn.execute("sleep 3600", timeout=0.2)
    channel.close.assert_called_once()
    channel.recv_exit_status.assert_not_called()


def test_debug_log_masks_join_secrets(caplog):
    conn, client = connected()
    respond(client)
    join = (
        "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef "
        "--discovery-token-ca-cert-hash sha256:0123456789"
    )
    with caplog.at_level(logging.DEBUG, logger="kubeprov.ssh"):
        conn.execute(join, become=True)

    assert "abcdef.0123456789abcdef" not in caplog.text
    assert "sha256:0123456789" not in caplog.text
    assert "--token [REDACTED]" in caplog.text
    # the command itself is sent unmasked
    assert "abcdef.0123456789abcdef" in client.exec_command.call_args[0][0]

def test_ssh_failure_raises_remote_execution_error():
    conn, client = connected()
    client.exec_command.side_effect = SSHException("channel closed")
    with pytest.raises(RemoteExecutionError, match="channel closed"):
        conn.execute("true")


def test_unreachable_host_is_remote_execution_error():
    conn = SSHConnection(Host("ghost", "10.255.255.1"), timeout=1)
    with mock.patch("paramiko.SSHClient.connect", side_effect=socket.error("unreachable")):
        with pytest.raises(RemoteExecutionError, match="Failed to connect"):
            conn.execute("true")


def test_pool_reuses_connections():
    pool = ConnectionPool(timeout=5)
    host = Host("cp-1", "10.0.0.1")
    assert pool.get_connection(host) is pool.get_connection(host)
    assert isinstance(pool.local(), LocalConnection)
    pool.close_all()
    assert pool.connections == {}


def test_local_connection_roundtrip(tmp_path):
    local = LocalConnection()
    path = str(tmp_path / "sub" / "file.txt")

    assert local.read_file(path) is None
    local.write_file(path, "hello\n", mode="600")
    assert local.read_file(path) == "hello\n"
    assert local.stat(path).mode == "600"
    assert local.execute("echo $((1 + 2))") == (0, "3\n", "")


def test_local_timeout():
    with pytest.raises(TaskTimeout):
        LocalConnection().execute("sleep 5", timeout=1)
