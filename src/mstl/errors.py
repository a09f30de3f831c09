# src/mstl/errors.py
from __future__ import annotations


class MstlError(RuntimeError):
    """Base class for every error mstl raises on purpose."""


class CommandError(MstlError):
    def __init__(self, args: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.cmd = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip() or f"exit status {returncode}"
        super().__init__(f"Command failed: {' '.join(self.cmd)}: {detail}")


class ConfigError(MstlError):
    pass


class DependencyError(MstlError):
    pass


class PreconditionError(MstlError):
    """Repository state forbids mutating anything (behind, conflicted, detached, changed)."""


class MutationError(MstlError):
    """
    Aggregated failures of one mutation phase.

    Every failure line is prefixed with the repository id; mutations that already
    succeeded in the same phase are not rolled back.
    """

    def __init__(self, phase: str, failures: list[str]):
        self.phase = phase
        self.failures = list(failures)
        super().__init__(f"errors occurred during {phase}:\n" + "\n".join(self.failures))


class BlockNotFoundError(MstlError):
    pass


class StageError(MstlError):
    def __init__(self, stage: str, inner: Exception):
        super().__init__(str(inner))
        self.stage = stage
        self.inner = inner
