"""Shared test fixtures for template builder tests."""

import os
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from pve_template.config import EnvironmentConfig, Route
from pve_template.executor import CommandResult, Executor


class FakeExecutor(Executor):
    """Records host commands and answers them from canned outputs."""

    def __init__(self) -> None:
        self.commands: List[List[str]] = []
        self.outputs: Dict[Tuple[str, ...], str] = {}
        self.failures: Dict[Tuple[str, ...], Tuple[int, str]] = {}
        self.files: Dict[str, str] = {}
        self.missing_tools: set = set()
        self.closed = False

    def fail_when(self, *prefix: str, returncode: int = 1, stderr: str = "boom") -> None:
        self.failures[prefix] = (returncode, stderr)

    def output_for(self, *prefix: str, stdout: str) -> None:
        self.outputs[prefix] = stdout

    def _match(self, table: Dict[Tuple[str, ...], object], args: List[str]) -> Optional[object]:
        for prefix, value in table.items():
            if tuple(args[: len(prefix)]) == prefix:
                return value
        return None

    def run(self, args: Sequence[str], check: bool = True) -> CommandResult:
        args = list(args)
        self.commands.append(args)

        failure = self._match(self.failures, args)
        if failure is not None:
            returncode, stderr = failure  # type: ignore[misc]
            return self._finish(CommandResult(args, returncode, "", stderr), check)

        if args[0] == "aria2c":
            dest = os.path.join(args[args.index("-d") + 1], args[args.index("-o") + 1])
            self.files[dest] = "downloaded image"

        stdout = self._match(self.outputs, args) or ""
        return self._finish(CommandResult(args, 0, str(stdout), ""), check)

    def which(self, tool: str) -> bool:
        return tool not in self.missing_tools

    def read_text(self, path: str) -> Optional[str]:
        return self.files.get(path)

    def write_text(self, path: str, content: str) -> None:
        self.files[path] = content

    def exists(self, path: str) -> bool:
        return path in self.files

    def replace(self, src: str, dst: str) -> None:
        self.files[dst] = self.files.pop(src)

    def close(self) -> None:
        self.closed = True

    def commands_for(self, tool: str) -> List[List[str]]:
        return [cmd for cmd in self.commands if cmd[0] == tool]

    def tools_called(self) -> List[str]:
        return [cmd[0] for cmd in self.commands]


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def env(tmp_path) -> EnvironmentConfig:
    """Build settings pointing every path at a temp directory."""
    return EnvironmentConfig(
        users=("alice",),
        routes=(),
        vm_memory_mb=2048,
        vm_settings="--net0 virtio,bridge=vmbr0",
        cloudinit_user="ubuntu",
        cloudinit_password="s3cret",
        pve_node="pve",
        work_dir=str(tmp_path),
        key_dir=str(tmp_path),
    )


@pytest.fixture
def sample_routes() -> Tuple[Route, ...]:
    return (
        Route("10.10.0.0/16", "192.168.1.1"),
        Route("172.16.0.0/12", "192.168.1.254"),
    )


@pytest.fixture
def storage_listing() -> List[dict]:
    """Storage entries as returned by /nodes/<node>/storage?content=images."""
    return [
        {"storage": "local", "type": "dir", "active": 1, "enabled": 1, "content": "iso,vztmpl,backup"},
        {"storage": "local-lvm", "type": "lvmthin", "active": 1, "enabled": 1, "content": "rootdir,images"},
        {"storage": "local-zfs", "type": "zfspool", "active": 1, "enabled": 1, "content": "images,rootdir"},
    ]


@pytest.fixture
def sample_storage_cfg() -> str:
    return """\
dir: local
        path /var/lib/vz
        content iso,vztmpl,backup

lvmthin: local-lvm
        thinpool data
        vgname pve
        content rootdir,images

zfspool: tank
        pool tank
        content images,rootdir
        sparse 1
"""
