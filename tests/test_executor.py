"""Tests for local and SSH command executors."""

import subprocess
from unittest import mock

import paramiko
import pytest
from paramiko.ssh_exception import NoValidConnectionsError

from pve_template.config import EnvironmentConfig
from pve_template.exceptions import CommandError
from pve_template.executor import LocalExecutor, SSHExecutor, executor_for, redact


class TestRedact:
    """Tests for command-line redaction."""

    def test_password_value_masked(self):
        rendered = redact(["qm", "set", "9001", "--ciuser", "ubuntu", "--cipassword", "s3cret"])

        assert "s3cret" not in rendered
        assert rendered.endswith("--cipassword ******")

    def test_inline_password_masked(self):
        assert redact(["qm", "set", "--cipassword=s3cret"]) == "qm set --cipassword=******"

    def test_arguments_quoted(self):
        assert redact(["sh", "-c", "command -v qm"]) == "sh -c 'command -v qm'"


class TestLocalExecutor:
    """Tests for LocalExecutor."""

    @mock.patch("pve_template.executor.subprocess.run")
    def test_run_success(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["qm", "list"], 0, stdout="VMID NAME\n", stderr="")

        result = LocalExecutor().run(["qm", "list"])

        assert result.ok
        assert result.stdout == "VMID NAME"
        mock_run.assert_called_once_with(["qm", "list"], capture_output=True, text=True)

    @mock.patch("pve_template.executor.subprocess.run")
    def test_run_failure_raises(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["qm", "template", "9001"], 2, stdout="", stderr="locked\n")

        with pytest.raises(CommandError) as exc_info:
            LocalExecutor().run(["qm", "template", "9001"])

        assert exc_info.value.returncode == 2
        assert exc_info.value.stderr == "locked"
        assert "'qm' exited with status 2" in str(exc_info.value)

    @mock.patch("pve_template.executor.subprocess.run")
    def test_run_unchecked_returns_result(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["qm", "destroy", "9001"], 2, stdout="", stderr="no such VM")

        result = LocalExecutor().run(["qm", "destroy", "9001"], check=False)

        assert result.ok is False

    @mock.patch("pve_template.executor.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_binary(self, mock_run):
        with pytest.raises(CommandError) as exc_info:
            LocalExecutor().run(["aria2c", "--version"])

        assert exc_info.value.returncode == 127

    def test_file_operations(self, tmp_path):
        executor = LocalExecutor()
        staged = str(tmp_path / "image.img.new")
        published = str(tmp_path / "image.img")

        executor.write_text(staged, "data")
        executor.replace(staged, published)

        assert executor.exists(published)
        assert not executor.exists(staged)
        assert executor.read_text(published) == "data"
        assert executor.read_text(staged) is None


class TestSSHExecutor:
    """Tests for SSHExecutor."""

    @pytest.fixture
    def mock_ssh(self):
        with mock.patch("pve_template.executor.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            stdout = mock.MagicMock()
            stdout.read.return_value = b"ok\n"
            stdout.channel.recv_exit_status.return_value = 0
            stderr = mock.MagicMock()
            stderr.read.return_value = b""
            client.exec_command.return_value = (mock.MagicMock(), stdout, stderr)
            yield client

    def test_connects_once_and_quotes(self, mock_ssh):
        executor = SSHExecutor("pve.lan", user="root", key_path="/keys/id_ed25519")

        executor.run(["virt-customize", "-a", "/var/lib/vz/a.img", "--run-command", "systemctl enable qemu-guest-agent"])
        executor.run(["qm", "list"])

        mock_ssh.connect.assert_called_once_with(hostname="pve.lan", username="root", key_filename="/keys/id_ed25519")
        command = mock_ssh.exec_command.call_args_list[0].args[0]
        assert command.endswith("--run-command 'systemctl enable qemu-guest-agent'")

    def test_non_zero_exit_raises(self, mock_ssh):
        _, stdout, stderr = mock_ssh.exec_command.return_value
        stdout.channel.recv_exit_status.return_value = 1
        stderr.read.return_value = b"unable to create VM 9001\n"

        with pytest.raises(CommandError, match="unable to create VM 9001"):
            SSHExecutor("pve.lan").run(["qm", "create", "9001"])

    def test_unreachable_host_is_command_error(self, mock_ssh):
        mock_ssh.connect.side_effect = NoValidConnectionsError({("192.168.1.10", 22): ConnectionRefusedError()})

        with pytest.raises(CommandError) as exc_info:
            SSHExecutor("pve.lan").run(["qm", "list"])

        assert exc_info.value.returncode == 255
        assert "connection failed" in str(exc_info.value)

    def test_auth_failure_is_command_error(self, mock_ssh):
        mock_ssh.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")

        with pytest.raises(CommandError, match="Authentication failed"):
            SSHExecutor("pve.lan").which("qm")

    def test_dropped_transport_is_command_error(self, mock_ssh):
        mock_ssh.exec_command.side_effect = paramiko.SSHException("SSH session not active")

        with pytest.raises(CommandError, match="SSH session not active"):
            SSHExecutor("pve.lan").run(["qm", "list"])

    def test_replace_uses_posix_rename(self, mock_ssh):
        executor = SSHExecutor("pve.lan")

        executor.replace("/work/a.img.new", "/work/a.img")

        mock_ssh.open_sftp.return_value.posix_rename.assert_called_once_with("/work/a.img.new", "/work/a.img")

    def test_missing_remote_file(self, mock_ssh):
        sftp = mock_ssh.open_sftp.return_value
        sftp.open.side_effect = FileNotFoundError
        sftp.stat.side_effect = FileNotFoundError

        executor = SSHExecutor("pve.lan")

        assert executor.read_text("/etc/pve/storage.cfg") is None
        assert executor.exists("/work/a.img") is False

    def test_close_releases_connections(self, mock_ssh):
        executor = SSHExecutor("pve.lan")
        executor.exists("/work/a.img")

        executor.close()

        mock_ssh.open_sftp.return_value.close.assert_called_once()
        mock_ssh.close.assert_called_once()


def test_executor_for_selects_by_host():
    assert isinstance(executor_for(EnvironmentConfig()), LocalExecutor)

    remote = executor_for(EnvironmentConfig(pve_host="pve.lan", ssh_user="admin"))
    assert isinstance(remote, SSHExecutor)
    assert remote.user == "admin"
