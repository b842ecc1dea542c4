# runner.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

from .artifacts import ArtifactStore
from .conditions import evaluate
from .errors import ArtifactError, CIError, ConditionError, RemoteError, StepFailure, TOOL_HINTS
from .model import (
    FAILED,
    OK_STATUSES,
    SKIPPED,
    SUCCEEDED,
    SUCCEEDED_WITH_ISSUES,
    Job,
    JobResult,
    Step,
    StepResult,
)
from .remote import RemoteExecutor, ServiceConnection
from .ui.console import Console, get_console

log = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a job needs from the surrounding run."""
    run_id: str
    workspace: Path
    artifacts: ArtifactStore
    connections: Dict[str, ServiceConnection] = field(default_factory=dict)
    default_timeout: float | None = None  # seconds, per job
    console: Console | None = None
    remote_factory: Callable[[ServiceConnection], RemoteExecutor] = RemoteExecutor
    published: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def out(self) -> Console:
        return self.console or get_console()

    def record_artifact(self, name: str) -> None:
        with self._lock:
            self.published.append(name)


# ----------------------------------------------------------------------
# Preflight
# ----------------------------------------------------------------------

def preflight(job: Job, context: RunContext) -> Path:
    """
    Check required tools and the job working directory before any step runs.

    Returns:
        The resolved job working directory.

    Raises:
        CIError: MissingTools / BadWorkingDirectory.
    """
    missing = [tool for tool in job.requires if shutil.which(tool) is None]
    if missing:
        hints = {t: TOOL_HINTS.get(t, "Install it and ensure it is on PATH.") for t in missing}
        raise CIError(
            kind="MissingTools",
            job=job.name,
            step=None,
            message=f"Required tools not found: {', '.join(missing)}",
            details={
                "PATH": os.environ.get("PATH", ""),
                "hints": hints,
            },
        )

    job_dir = (context.workspace / (job.working_directory or ".")).resolve()
    if not job_dir.is_dir():
        raise CIError(
            kind="BadWorkingDirectory",
            job=job.name,
            step=None,
            message="Job working directory does not exist",
            details={"cwd": str(job_dir)},
        )
    return job_dir


def _step_dir(job: Job, step: Step, job_dir: Path) -> Path:
    cwd = (job_dir / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        raise CIError(
            kind="BadWorkingDirectory",
            job=job.name,
            step=step.name,
            message="Step cwd does not exist",
            details={"cwd": str(cwd)},
        )
    return cwd


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _shell(step: Step, job: Job, cwd: Path, timeout: float | None) -> StepResult:
    env = os.environ.copy()
    env.update(job.env)
    env.update(step.env)

    log.debug("[%s] spawn %r in %s (timeout=%s)", job.name, step.run, cwd, timeout)
    started = time.monotonic()
    try:
        # own process group so a timeout kills the whole command tree
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise CIError(
            kind="SpawnFailed",
            job=job.name,
            step=step.name,
            message=str(e),
            details={"command": step.run, "cwd": str(cwd)},
        ) from e

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        os.killpg(proc.pid, signal.SIGKILL)
        stdout, stderr = proc.communicate()
        failure = StepFailure(job.name, step.name, step.run, None, stdout or "", stderr or "")
        return StepResult(
            name=step.name,
            status=FAILED,
            exit_code=None,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
            error=f"{failure} (after {timeout:g}s)",
        )

    result = StepResult(
        name=step.name,
        status=SUCCEEDED,
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=time.monotonic() - started,
    )
    if proc.returncode != 0:
        result.status = FAILED
        result.error = str(StepFailure(job.name, step.name, step.run, proc.returncode))
    return result


def _publish(step: Step, cwd: Path, context: RunContext) -> StepResult:
    data = step.data or {}
    name = data["artifact"]
    ref = context.artifacts.publish(context.run_id, name, cwd / data["path"])
    context.record_artifact(name)
    return StepResult(
        name=step.name,
        status=SUCCEEDED,
        stdout=f"published {name}: {ref.file_count} file(s), {ref.size} bytes, sha256 {ref.digest[:12]}\n",
    )


def _download(step: Step, cwd: Path, context: RunContext) -> StepResult:
    data = step.data or {}
    name = data["artifact"]
    dest = cwd / data.get("path", name)
    ref = context.artifacts.download(context.run_id, name, dest)
    return StepResult(
        name=step.name,
        status=SUCCEEDED,
        stdout=f"downloaded {name} ({ref.file_count} file(s)) to {dest}\n",
    )


def _remote(step: Step, cwd: Path, context: RunContext, timeout: float | None) -> StepResult:
    data = step.data or {}
    conn_name = data.get("connection", "")
    connection = context.connections.get(conn_name)
    if connection is None:
        known = ", ".join(sorted(context.connections)) or "none configured"
        raise RemoteError(f"Unknown service connection '{conn_name}' (known: {known})")

    executor = context.remote_factory(connection)
    if step.kind == "ssh_copy":
        res = executor.copy(
            cwd / data["source_folder"],
            data["target_folder"],
            contents=data.get("contents") or ["**"],
            clean_target=bool(data.get("clean_target", False)),
            timeout=timeout,
        )
    else:
        res = executor.run(step.run, timeout=timeout)
    return StepResult(name=step.name, status=SUCCEEDED, exit_code=res.exit_code,
                      stdout=res.stdout, stderr=res.stderr)


def run_step(step: Step, *, job: Job, context: RunContext,
             job_dir: Path | None = None, timeout: float | None = None) -> StepResult:
    """
    Execute one step and report its outcome.

    Command failures, artifact errors and remote errors become a FAILED
    StepResult; only engine-level problems (CIError) propagate.
    """
    job_dir = job_dir or (context.workspace / (job.working_directory or ".")).resolve()
    if step.timeout is not None:
        timeout = step.timeout if timeout is None else min(timeout, step.timeout)

    cwd = _step_dir(job, step, job_dir)
    started = time.monotonic()
    try:
        if step.kind == "script":
            return _shell(step, job, cwd, timeout)
        if step.kind == "publish":
            result = _publish(step, cwd, context)
        elif step.kind == "download":
            result = _download(step, cwd, context)
        elif step.kind in ("ssh_copy", "ssh_run"):
            result = _remote(step, cwd, context, timeout)
        else:
            raise CIError(kind="UnknownStepKind", job=job.name, step=step.name,
                          message=f"Unsupported step kind {step.kind!r}")
    except ArtifactError as e:
        return StepResult(name=step.name, status=FAILED, error=str(e),
                          duration=time.monotonic() - started)
    except RemoteError as e:
        return StepResult(name=step.name, status=FAILED, exit_code=e.exit_code, stderr=e.output,
                          error=str(e), duration=time.monotonic() - started)
    result.duration = time.monotonic() - started
    return result


def _job_status(steps: List[StepResult]) -> str:
    statuses = [s.status for s in steps]
    if FAILED in statuses:
        return FAILED
    if SUCCEEDED_WITH_ISSUES in statuses:
        return SUCCEEDED_WITH_ISSUES
    return SUCCEEDED


def run_job(job: Job, context: RunContext) -> JobResult:
    """
    Execute a single job:
      1) preflight checks (tools, directories)
      2) execute steps in order, honoring step conditions
      3) summarize into a JobResult

    After a failed step the remaining steps are skipped unless their own
    condition (e.g. `always()` or `failed()`) selects them.

    Raises:
        CIError: preflight failures.
    """
    console = context.out
    job_dir = preflight(job, context)

    budget = job.timeout_minutes * 60 if job.timeout_minutes else context.default_timeout
    deadline = time.monotonic() + budget if budget else None

    results: List[StepResult] = []
    for step in job.steps:
        status_so_far = _job_status(results)
        try:
            should_run = evaluate(
                step.condition,
                dependency_statuses={job.name: status_so_far},
                variables=job.variables,
            )
        except ConditionError as e:
            results.append(StepResult(name=step.name, status=FAILED, error=f"Invalid condition: {e}"))
            console.print_failure(step.name, str(e))
            continue

        if not should_run:
            reason = f"condition {step.condition or 'succeeded()'} is false"
            results.append(StepResult(name=step.name, status=SKIPPED, error=reason))
            console.print_step_skipped(job.name, step.name, reason)
            continue

        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                results.append(StepResult(name=step.name, status=FAILED,
                                          error=f"job timed out after {budget:g}s"))
                console.print_failure(step.name, "job timeout exceeded")
                continue

        console.print_step(job.name, step.name)
        try:
            result = run_step(step, job=job, context=context, job_dir=job_dir, timeout=remaining)
        except CIError as e:
            result = StepResult(name=step.name, status=FAILED, error=str(e))

        if result.status == FAILED:
            if step.continue_on_error:
                result.status = SUCCEEDED_WITH_ISSUES
            console.print_failure(
                step.name,
                result.error or "step failed",
                exit_code=result.exit_code,
                hint="continueOnError is set; the job keeps going" if step.continue_on_error else None,
            )
            console.print_log_tail(result.stdout + result.stderr)
        results.append(result)

    status = _job_status(results)
    if status in OK_STATUSES:
        console.print_success(job.name)
    else:
        console.print_failure(job.name, "one or more steps failed", is_job=True)
    return JobResult(name=job.name, status=status, steps=results)
