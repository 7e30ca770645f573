"""
Run host commands locally or on a Proxmox node over SSH.

Every external tool the builder drives (aria2c, virt-customize, qm, pvesh)
goes through an executor so the whole pipeline can target either the local
machine or a remote hypervisor selected by ``PVE_HOST``.
"""

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

import paramiko

from pve_template.config import EnvironmentConfig
from pve_template.exceptions import CommandError

logger = logging.getLogger(__name__)

SECRET_FLAGS = ("--cipassword",)


def redact(args: Sequence[str]) -> str:
    """Render a command line for logging with secret values masked."""
    rendered: List[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            rendered.append("******")
            hide_next = False
            continue
        flag = arg.split("=", 1)[0]
        if flag in SECRET_FLAGS:
            if "=" in arg:
                rendered.append(f"{flag}=******")
            else:
                rendered.append(arg)
                hide_next = True
            continue
        rendered.append(shlex.quote(arg))
    return " ".join(rendered)


@dataclass
class CommandResult:
    """Outcome of a finished host command."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Executor:
    """Interface shared by the local and SSH executors."""

    def run(self, args: Sequence[str], check: bool = True) -> CommandResult:
        raise NotImplementedError

    def read_text(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def write_text(self, path: str, content: str) -> None:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def replace(self, src: str, dst: str) -> None:
        raise NotImplementedError

    def which(self, tool: str) -> bool:
        """Return True if ``tool`` is on the PATH of the target host."""
        result = self.run(["sh", "-c", f"command -v {shlex.quote(tool)}"], check=False)
        return result.ok

    def close(self) -> None:
        """Release any connection held by the executor."""

    def _finish(self, result: CommandResult, check: bool) -> CommandResult:
        if result.stdout:
            logger.debug(result.stdout)
        if check and not result.ok:
            raise CommandError(result.args, result.returncode, result.stderr)
        return result


class LocalExecutor(Executor):
    """Runs commands on the machine the builder runs on."""

    def run(self, args: Sequence[str], check: bool = True) -> CommandResult:
        logger.debug(f"$ {redact(args)}")
        try:
            proc = subprocess.run(list(args), capture_output=True, text=True)
        except FileNotFoundError:
            raise CommandError(list(args), 127, f"{args[0]}: command not found")
        result = CommandResult(list(args), proc.returncode, proc.stdout.strip(), proc.stderr.strip())
        return self._finish(result, check)

    def which(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def read_text(self, path: str) -> Optional[str]:
        try:
            with open(path) as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write_text(self, path: str, content: str) -> None:
        with open(path, "w") as f:
            f.write(content)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def replace(self, src: str, dst: str) -> None:
        os.replace(src, dst)


class SSHExecutor(Executor):
    """Runs commands on a remote Proxmox node through a single SSH session."""

    def __init__(self, host: str, user: str = "root", key_path: str = "~/.ssh/id_rsa") -> None:
        self.host = host
        self.user = user
        self.key_path = os.path.expanduser(key_path)
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                ssh.connect(hostname=self.host, username=self.user, key_filename=self.key_path)
            except (paramiko.SSHException, OSError) as e:
                raise CommandError(["ssh", f"{self.user}@{self.host}"], 255, f"connection failed: {e}") from e
            self._ssh = ssh
        return self._ssh

    def _sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self._client().open_sftp()
        return self._sftp

    def run(self, args: Sequence[str], check: bool = True) -> CommandResult:
        logger.debug(f"[{self.host}]$ {redact(args)}")
        command = " ".join(shlex.quote(arg) for arg in args)
        client = self._client()
        try:
            stdin, stdout, stderr = client.exec_command(command)
            out = stdout.read().decode().strip()
            err = stderr.read().decode().strip()
            returncode = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommandError(list(args), 255, f"ssh transport to {self.host} failed: {e}") from e
        return self._finish(CommandResult(list(args), returncode, out, err), check)

    def read_text(self, path: str) -> Optional[str]:
        try:
            with self._sftp_client().open(path, "r") as f:
                return f.read().decode()
        except FileNotFoundError:
            return None

    def write_text(self, path: str, content: str) -> None:
        with self._sftp_client().open(path, "w") as f:
            f.write(content)

    def exists(self, path: str) -> bool:
        try:
            self._sftp_client().stat(path)
            return True
        except FileNotFoundError:
            return False

    def replace(self, src: str, dst: str) -> None:
        self._sftp_client().posix_rename(src, dst)

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None


def executor_for(env: EnvironmentConfig) -> Executor:
    """Pick the executor matching the configured target host."""
    if env.pve_host:
        logger.info(f"Running host commands on {env.pve_host} over SSH")
        return SSHExecutor(env.pve_host, user=env.ssh_user, key_path=env.ssh_key_path)
    return LocalExecutor()
