import pytest

from kubeprov.modules.errors import ApplyError, CheckError, PlaybookError
from kubeprov.modules.models import ResourceKind
from kubeprov.modules.resources import get_controller, registered_kinds
from kubeprov.modules.resources.base import normalize_mode
from kubeprov.modules.resources.firewall import port_spec
from kubeprov.modules.resources.package import parse_policy, parse_simulated_upgrade
from kubeprov.modules.resources.repository import repo_filename
from kubeprov.modules.resources.textedit import render_block, replace_lines

CONTAINERD_BLOCK = (
    '[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]\n'
    '  [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]\n'
    '    SystemdCgroup = true\n'
)


def apply_twice(kind, ctx, params):
    controller = get_controller(kind)
    controller.validate(params)
    return controller.apply(ctx, params), controller.apply(ctx, params)


def test_every_kind_has_a_controller():
    assert registered_kinds() == sorted(k.value for k in ResourceKind)


def test_unknown_kind_is_a_playbook_error():
    with pytest.raises(PlaybookError):
        get_controller("blockinfile")


# package

def test_package_present_is_idempotent(ctx, fake_host):
    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": ["docker-ce", "containerd.io"], "state": "present"})
    assert first.changed and not second.changed
    assert set(fake_host.installed) == {"docker-ce", "containerd.io"}
    assert len(fake_host.ran("apt-get install")) == 1


def test_package_latest_upgrades_outdated(ctx, fake_host):
    fake_host.installed["kubeadm"] = "1.0"
    fake_host.candidates["kubeadm"] = "1.1"
    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": "kubeadm", "state": "latest", "update_cache": True})
    assert first.changed and not second.changed
    assert fake_host.installed["kubeadm"] == "1.1"


def test_package_latest_when_current_runs_no_apt(ctx, fake_host):
    fake_host.installed["kubectl"] = "1.0"
    result = get_controller(ResourceKind.PACKAGE).apply(ctx, {"name": "kubectl", "state": "latest", "update_cache": True})
    assert not result.changed
    assert fake_host.ran("apt-get") == []


def test_package_upgrade_all(ctx, fake_host):
    fake_host.installed.update({"openssl": "1.0", "curl": "1.0"})
    fake_host.candidates["openssl"] = "1.2"
    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": "*", "state": "latest"})
    assert first.changed and not second.changed
    assert fake_host.installed["openssl"] == "1.2"
    assert len(fake_host.ran("apt-get -y upgrade")) == 1


def test_package_upgrade_all_ignores_held_packages(ctx, fake_host):
    fake_host.installed["kubeadm"] = "1.28.0"
    fake_host.candidates["kubeadm"] = "1.29.0"
    fake_host.held.add("kubeadm")

    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": "*", "state": "latest"})

    assert not first.changed and not second.changed
    assert fake_host.installed == {"kubeadm": "1.28.0"}
    assert fake_host.ran("apt-get -y upgrade") == []


def test_package_absent(ctx, fake_host):
    fake_host.installed["snapd"] = "1.0"
    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": "snapd", "state": "absent"})
    assert first.changed and not second.changed
    assert "snapd" not in fake_host.installed


def test_package_hold(ctx, fake_host):
    fake_host.installed["kubelet"] = "1.0"
    first, second = apply_twice(ResourceKind.PACKAGE, ctx, {"name": "kubelet", "selection": "hold"})
    assert first.changed and not second.changed
    assert fake_host.held == {"kubelet"}


def test_package_without_candidate_fails_check(ctx, fake_host):
    fake_host.unavailable.add("nonexistent")
    with pytest.raises(CheckError, match="No installation candidate"):
        get_controller(ResourceKind.PACKAGE).check(ctx, {"name": "nonexistent", "state": "latest"})


@pytest.mark.parametrize("params", [
    {"name": "*", "state": "present"},
    {"name": ["*", "curl"], "state": "latest"},
    {"name": "curl"},
    {"name": "curl", "state": "installed"},
    {"state": "present"},
])
def test_package_rejects_bad_params(params):
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.PACKAGE).validate(params)


def test_parse_policy():
    output = "kubeadm:\n  Installed: 1.28.1-00\n  Candidate: 1.28.2-00\n  Version table:\n"
    assert parse_policy(output) == {"installed": "1.28.1-00", "candidate": "1.28.2-00"}


def test_parse_simulated_upgrade():
    output = (
        "Reading package lists...\n"
        "The following packages have been kept back:\n"
        "  kubeadm\n"
        "Inst openssl [1.1.1f-1ubuntu2.19] (1.1.1f-1ubuntu2.20 Ubuntu:20.04/focal-updates [amd64])\n"
        "Inst tzdata [2023c-0ubuntu0.20.04.1] (2023c-0ubuntu0.20.04.2 Ubuntu:20.04/focal-updates [all])\n"
        "Conf openssl (1.1.1f-1ubuntu2.20 Ubuntu:20.04/focal-updates [amd64])\n"
    )
    assert parse_simulated_upgrade(output) == ["openssl", "tzdata"]


# firewall

def test_firewall_opens_runtime_and_permanent(ctx, fake_host):
    first, second = apply_twice(ResourceKind.FIREWALL, ctx, {"port": "6443/tcp", "state": "enabled"})
    assert first.changed and not second.changed
    assert fake_host.ports == {"runtime": {"6443/tcp"}, "permanent": {"6443/tcp"}}


def test_firewall_only_fixes_drifting_scope(ctx, fake_host):
    fake_host.ports["permanent"].add("2379-2380/tcp")
    result = get_controller(ResourceKind.FIREWALL).apply(ctx, {"port": "2379-2380/tcp"})
    assert result.changed
    assert fake_host.ran("--add-port") == ["firewall-cmd --add-port=2379-2380/tcp"]


def test_firewall_disable(ctx, fake_host):
    fake_host.ports["runtime"].add("10250/tcp")
    fake_host.ports["permanent"].add("10250/tcp")
    first, second = apply_twice(ResourceKind.FIREWALL, ctx, {"port": "10250/tcp", "state": "disabled"})
    assert first.changed and not second.changed
    assert fake_host.ports == {"runtime": set(), "permanent": set()}


def test_firewall_query_error_is_check_error(ctx, fake_host):
    fake_host.fail_on("--query-port", rc=252, stderr="FirewallD is not running")
    with pytest.raises(CheckError, match="not running"):
        get_controller(ResourceKind.FIREWALL).check(ctx, {"port": "6443/tcp"})


@pytest.mark.parametrize("port", ["6443", "abc/tcp", "70000/tcp", "2380-2379/tcp", "6443/icmp"])
def test_firewall_rejects_bad_ports(port):
    params = {"port": port} if "/" in port else {"port": port, "protocol": "icmp"}
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.FIREWALL).validate(params)


def test_firewall_requires_a_scope():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.FIREWALL).validate({"port": "22/tcp", "immediate": False, "permanent": False})


def test_port_spec_defaults_to_tcp():
    assert port_spec({"port": 6443}) == "6443/tcp"
    assert port_spec({"port": "53", "protocol": "udp"}) == "53/udp"


# template and copy

def test_template_renders_and_is_idempotent(ctx, fake_host, tmp_path):
    (tmp_path / "motd.j2").write_text("{{ greeting }} from {{ greeting | upper }}\n")
    params = {"src": "motd.j2", "dest": "/etc/motd", "owner": "root", "group": "root"}
    first, second = apply_twice(ResourceKind.TEMPLATE, ctx, params)
    assert first.changed and not second.changed
    assert fake_host.files["/etc/motd"] == "hello from HELLO\n"


def test_template_rewrites_on_drift(ctx, fake_host, tmp_path):
    (tmp_path / "motd.j2").write_text("{{ greeting }}\n")
    fake_host.files["/etc/motd"] = "stale\n"
    result = get_controller(ResourceKind.TEMPLATE).apply(ctx, {"src": "motd.j2", "dest": "/etc/motd"})
    assert result.changed
    assert fake_host.files["/etc/motd"] == "hello\n"


def test_template_mode_drift_is_detected(ctx, fake_host, tmp_path):
    (tmp_path / "motd.j2").write_text("hi\n")
    controller = get_controller(ResourceKind.TEMPLATE)
    controller.apply(ctx, {"src": "motd.j2", "dest": "/etc/motd"})
    state = controller.check(ctx, {"src": "motd.j2", "dest": "/etc/motd", "mode": 0o600})
    assert not state.in_sync
    assert "mode" in state.detail


def test_copy_content(ctx, fake_host):
    first, second = apply_twice(ResourceKind.COPY, ctx, {"content": "abc\n", "dest": "/tmp/x", "mode": "600"})
    assert first.changed and not second.changed
    assert fake_host.modes["/tmp/x"].mode == "600"


def test_copy_local_src(ctx, fake_host, tmp_path):
    src = tmp_path / "token"
    src.write_text("kubeadm join ...\n")
    first, second = apply_twice(ResourceKind.COPY, ctx, {"src": str(src), "dest": "/root/join_token"})
    assert first.changed and not second.changed
    assert fake_host.files["/root/join_token"] == "kubeadm join ...\n"


def test_copy_needs_exactly_one_source():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.COPY).validate({"dest": "/tmp/x"})
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.COPY).validate({"dest": "/tmp/x", "src": "a", "content": "b"})


# text block and replace

def test_render_block_appends_then_updates_in_place():
    text = "version = 2\n"
    once = render_block(text, CONTAINERD_BLOCK)
    assert once == (
        "version = 2\n"
        "# BEGIN KUBEPROV MANAGED BLOCK\n" + CONTAINERD_BLOCK + "# END KUBEPROV MANAGED BLOCK\n"
    )
    assert render_block(once, CONTAINERD_BLOCK) == once

    updated = render_block(once + "tail = 1\n", "x = 1\n")
    assert updated == (
        "version = 2\n# BEGIN KUBEPROV MANAGED BLOCK\nx = 1\n# END KUBEPROV MANAGED BLOCK\ntail = 1\n"
    )


def test_render_block_removal():
    text = render_block("a\n", "b\n")
    assert render_block(text, "", present=False) == "a\n"
    assert render_block("a\n", "", present=False) == "a\n"


def test_render_block_unterminated():
    with pytest.raises(ValueError, match="unterminated"):
        render_block("# BEGIN KUBEPROV MANAGED BLOCK\nx\n", "y\n")


def test_text_block_controller(ctx, fake_host):
    fake_host.files["/etc/containerd/config.toml"] = "version = 2\n"
    params = {"path": "/etc/containerd/config.toml", "block": CONTAINERD_BLOCK}
    first, second = apply_twice(ResourceKind.TEXT_BLOCK, ctx, params)
    assert first.changed and not second.changed
    assert "SystemdCgroup = true" in fake_host.files["/etc/containerd/config.toml"]


def test_text_block_missing_file(ctx):
    controller = get_controller(ResourceKind.TEXT_BLOCK)
    with pytest.raises(CheckError, match="does not exist"):
        controller.check(ctx, {"path": "/nope", "block": "x"})
    assert controller.apply(ctx, {"path": "/nope", "block": "x", "create": True}).changed


def test_text_block_marker_must_have_placeholder():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.TEXT_BLOCK).validate({"path": "/x", "block": "y", "marker": "# managed"})


def test_replace_comments_out_swap():
    fstab = (
        "UUID=abc / ext4 defaults 0 1\n"
        "/swap.img\tnone\tswap\tsw\t0\t0\n"
        "# /old.img none swap sw 0 0\n"
    )
    text, count = replace_lines(fstab, r"^([^#].*?\sswap\s+sw\s+.*)$", r"# \1")
    assert count == 1
    assert "# /swap.img\tnone\tswap\tsw\t0\t0\n" in text
    assert replace_lines(text, r"^([^#].*?\sswap\s+sw\s+.*)$", r"# \1")[1] == 0


def test_replace_controller(ctx, fake_host):
    fake_host.files["/etc/fstab"] = "/swap.img none swap sw 0 0\n"
    params = {"path": "/etc/fstab", "regexp": r"^([^#].*?\sswap\s+sw\s+.*)$", "replace": r"# \1"}
    first, second = apply_twice(ResourceKind.REPLACE, ctx, params)
    assert first.changed and not second.changed
    assert fake_host.files["/etc/fstab"] == "# /swap.img none swap sw 0 0\n"


def test_replace_rejects_bad_regexp():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.REPLACE).validate({"path": "/x", "regexp": "("})


# service

def test_service_started_and_enabled(ctx, fake_host):
    first, second = apply_twice(ResourceKind.SERVICE, ctx, {"name": "containerd", "state": "started", "enabled": True})
    assert first.changed and not second.changed
    assert "containerd" in fake_host.enabled and "containerd" in fake_host.active


def test_service_restart_always_changes(ctx, fake_host):
    first, second = apply_twice(ResourceKind.SERVICE, ctx, {"name": "docker", "state": "restarted"})
    assert first.changed and second.changed
    assert len(fake_host.ran("systemctl restart docker")) == 2


def test_service_daemon_reload(ctx, fake_host):
    result = get_controller(ResourceKind.SERVICE).apply(ctx, {"daemon_reload": True})
    assert result.changed
    assert fake_host.ran("daemon-reload") == ["systemctl daemon-reload"]


def test_service_needs_name_or_reload():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.SERVICE).validate({"state": "started"})
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.SERVICE).validate({"name": "docker"})


# apt key and repository

def test_apt_key(ctx, fake_host):
    params = {"name": "docker", "url": "https://download.docker.com/linux/ubuntu/gpg"}
    first, second = apply_twice(ResourceKind.APT_KEY, ctx, params)
    assert first.changed and not second.changed
    assert "/etc/apt/trusted.gpg.d/docker.asc" in fake_host.files


def test_apt_repository(ctx, fake_host):
    params = {"repo": "deb https://apt.kubernetes.io/ kubernetes-xenial main", "filename": "kubernetes"}
    first, second = apply_twice(ResourceKind.APT_REPOSITORY, ctx, params)
    assert first.changed and not second.changed
    assert fake_host.files["/etc/apt/sources.list.d/kubernetes.list"] == (
        "deb https://apt.kubernetes.io/ kubernetes-xenial main\n"
    )
    assert len(fake_host.ran("apt-get update")) == 1


def test_repo_filename():
    assert repo_filename("deb [arch=amd64] https://download.docker.com/linux/ubuntu focal stable") == (
        "download_docker_com_linux_ubuntu"
    )


def test_apt_repository_rejects_non_deb_line():
    with pytest.raises(PlaybookError):
        get_controller(ResourceKind.APT_REPOSITORY).validate({"repo": "ppa:foo/bar"})


# raw command

def test_command_always_changes(ctx, fake_host):
    first, second = apply_twice(ResourceKind.COMMAND, ctx, {"cmd": "swapoff -a"})
    assert first.changed and second.changed
    assert fake_host.ran("swapoff -a") == ["swapoff -a", "swapoff -a"]


def test_command_output_is_captured(ctx, fake_host):
    fake_host.respond("hostname", stdout="cp-1\n")
    result = get_controller(ResourceKind.COMMAND).apply(ctx, {"cmd": "hostname"})
    assert (result.rc, result.stdout) == (0, "cp-1\n")


def test_command_creates_guard(ctx, fake_host):
    controller = get_controller(ResourceKind.COMMAND)
    params = {"cmd": "kubeadm init", "creates": "/etc/kubernetes/admin.conf"}
    assert controller.apply(ctx, params).changed
    fake_host.files["/etc/kubernetes/admin.conf"] = "apiVersion: v1\n"
    assert not controller.apply(ctx, params).changed


def test_command_chdir(ctx, fake_host):
    get_controller(ResourceKind.COMMAND).apply(ctx, {"cmd": "ls", "chdir": "/opt"})
    assert fake_host.commands[-1] == "cd /opt && ls"


def test_command_failure(ctx, fake_host):
    fake_host.fail_on("kubeadm join", rc=1, stderr="error execution phase preflight")
    with pytest.raises(ApplyError, match="preflight"):
        get_controller(ResourceKind.COMMAND).apply(ctx, {"cmd": "kubeadm join x"})


def test_normalize_mode():
    assert normalize_mode(0o644) == "644"
    assert normalize_mode("0600") == "600"
    assert normalize_mode(None) is None
