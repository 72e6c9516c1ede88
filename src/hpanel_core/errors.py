from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Sequence


class HPanelError(Exception):
    code = "ERROR"
    exit_code = 1

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(HPanelError):
    code = "VALIDATION"
    exit_code = 2


class AllocationError(HPanelError):
    code = "ALLOCATION"


class BuildError(HPanelError):
    code = "BUILD"

    def __init__(
        self,
        message: str,
        release_path: Optional[Path] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.release_path = release_path


class CutoverError(HPanelError):
    code = "CUTOVER"


class ReconcileError(HPanelError):
    code = "RECONCILE"

    def __init__(
        self,
        message: str,
        essential: bool = True,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.essential = essential


class ExternalToolError(HPanelError):
    code = "EXTERNAL_TOOL"


class CommandError(HPanelError):
    """A collaborator command exited non-zero."""

    code = "COMMAND"

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"Command failed ({returncode}): {' '.join(argv)}"
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message, {"argv": list(argv), "returncode": returncode, "stderr": stderr})
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


class OperationCancelled(HPanelError):
    """The operator declined a confirmation; nothing was changed."""

    code = "CANCELLED"
    exit_code = 0
