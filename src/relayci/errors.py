# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - run.json summaries
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class PipelineDefinitionError(ValueError):
    """Raised when a pipeline document is structurally invalid."""

    def __init__(self, message: str, *, where: str | None = None):
        self.where = where
        super().__init__(f"{where}: {message}" if where else message)


class ConditionError(ValueError):
    """Raised when a condition expression cannot be parsed or evaluated."""


class ArtifactError(Exception):
    """Raised by the artifact store."""


class RemoteError(Exception):
    """Raised when a remote (ssh/scp) operation fails."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = ""):
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class ConfigError(Exception):
    """Raised for unreadable or malformed engine configuration."""


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "ssh": "Install an OpenSSH client (ssh) or fix PATH.",
    "scp": "Install an OpenSSH client (scp) or fix PATH.",
    "tar": "Install tar or fix PATH.",
}
