# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional


STEP_KINDS = ("script", "publish", "download", "ssh_copy", "ssh_run")

# statuses shared by steps, jobs, stages and runs
SUCCEEDED = "succeeded"
SUCCEEDED_WITH_ISSUES = "succeeded_with_issues"
FAILED = "failed"
SKIPPED = "skipped"

OK_STATUSES = (SUCCEEDED, SUCCEEDED_WITH_ISSUES)


@dataclass(frozen=True)
class Step:
    """A single step inside a job. `kind` selects how it is executed."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "script"
    data: Optional[Dict[str, Any]] = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: str | None = None
    continue_on_error: bool = False
    timeout: float | None = None  # seconds


@dataclass
class Job:
    """A unit of sequential steps within a stage."""
    name: str
    steps: List[Step]
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)
    working_directory: str | None = None
    timeout_minutes: float | None = None
    pool: str | None = None
    condition: str | None = None
    variables: Dict[str, str] = field(default_factory=dict)


@dataclass
class Stage:
    """
    A named phase of a pipeline.

    `depends_on=None` means "depends on the previous stage in the document";
    an explicit empty list means the stage has no dependencies.
    """
    name: str
    jobs: List[Job]
    depends_on: Optional[List[str]] = None
    condition: str | None = None
    variables: Dict[str, str] = field(default_factory=dict)
    display_name: str | None = None


@dataclass
class Pipeline:
    name: str
    stages: List[Stage]
    variables: Dict[str, str] = field(default_factory=dict)
    trigger: List[str] = field(default_factory=list)
    trigger_enabled: bool = True
    trigger_exclude: List[str] = field(default_factory=list)
    source: str | None = None
    # set once $(var) macros have been expanded
    resolved: bool = False

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def resolved_dependencies(self) -> Dict[str, List[str]]:
        """Stage name -> dependency names, with implicit chaining applied."""
        deps: Dict[str, List[str]] = {}
        previous: str | None = None
        for s in self.stages:
            if s.depends_on is None:
                deps[s.name] = [previous] if previous else []
            else:
                deps[s.name] = list(s.depends_on)
            previous = s.name
        return deps

    def triggers_on(self, branch: str) -> bool:
        """Include patterns select branches (all when empty); exclude patterns win."""
        if not self.trigger_enabled:
            return False
        short = branch.split("refs/heads/", 1)[-1]

        def _matches(patterns: List[str]) -> bool:
            return any(fnmatch(short, p.split("refs/heads/", 1)[-1]) for p in patterns)

        if _matches(self.trigger_exclude):
            return False
        return not self.trigger or _matches(self.trigger)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "error": self.error,
            # keep run.json small
            "log_tail": "\n".join((self.stdout + self.stderr).strip().splitlines()[-30:]),
        }


@dataclass
class JobResult:
    name: str
    status: str
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class StageResult:
    name: str
    status: str
    jobs: List[JobResult] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "reason": self.reason,
            "jobs": [j.to_dict() for j in self.jobs],
        }


@dataclass
class RunResult:
    run_id: str
    pipeline: str
    status: str
    stages: Dict[str, StageResult] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None

    def statuses(self) -> Dict[str, str]:
        return {name: r.status for name, r in self.stages.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "artifacts": list(self.artifacts),
            "stages": [r.to_dict() for r in self.stages.values()],
        }
