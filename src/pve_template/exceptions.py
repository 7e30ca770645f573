"""Error taxonomy for template builds.

Every failure that ends a build is a ``TemplateBuildError`` tagged with the
pipeline stage it happened in, so the CLI and the notifier can report it
without inspecting the exception type.
"""

from typing import List, Optional


class TemplateBuildError(RuntimeError):
    """Base class for failures that abort a template build."""

    stage = "build"

    def __init__(self, cause: str, stage: Optional[str] = None) -> None:
        super().__init__(cause)
        self.cause = cause
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {self.cause}"

    @property
    def detail(self) -> str:
        """Message without the stage tag."""
        return self.cause


class PreconditionFailed(TemplateBuildError):
    """Missing configuration, tool or argument; no stage was entered."""

    stage = "preconditions"


class NoStorageAvailable(TemplateBuildError):
    """No active storage backend accepts VM disk images."""

    stage = "storage"


class DownloadFailed(TemplateBuildError):
    """The cloud image could not be fetched to the staged path."""

    stage = "download"


class CustomizationStepFailed(TemplateBuildError):
    """An in-image operation failed; the staged image is left on disk."""

    stage = "customize"

    def __init__(self, step: str, cause: str) -> None:
        super().__init__(cause)
        self.step = step

    def __str__(self) -> str:
        return f"[{self.stage}:{self.step}] {self.cause}"

    @property
    def detail(self) -> str:
        return f"{self.step}: {self.cause}"


class VMCreationFailed(TemplateBuildError):
    """A hypervisor call failed while materializing the template.

    The VM at ``vm_id`` may be left partially configured and needs manual
    cleanup (``qm destroy <vm_id> --purge 1``).
    """

    stage = "materialize"

    def __init__(self, step: str, vm_id: int, cause: str) -> None:
        super().__init__(cause)
        self.step = step
        self.vm_id = vm_id

    def __str__(self) -> str:
        return f"[{self.stage}:{self.step}] VM {self.vm_id}: {self.cause}"

    @property
    def detail(self) -> str:
        return f"{self.step} on VM {self.vm_id}: {self.cause}"


class NotificationDeliveryFailed(RuntimeError):
    """The status message could not be delivered. Logged, never escalated."""


class CommandError(RuntimeError):
    """A host command exited with a non-zero status."""

    def __init__(self, args: List[str], returncode: int, stderr: str = "") -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"'{args[0]}' exited with status {returncode}{detail}")
