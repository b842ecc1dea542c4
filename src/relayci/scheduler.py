# scheduler.py
"""
Stage Scheduler.

Stages are visited in dependency-level order. Each stage's condition is
evaluated against the final statuses of its direct dependencies, so with
the default `succeeded()` a failure short-circuits everything downstream.
Jobs of a stage run in a thread pool.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .artifacts import ArtifactStore
from .conditions import DEFAULT_CONDITION, evaluate
from .dag import stage_levels
from .errors import CIError, ConditionError
from .git_facts.git import source_facts
from .loader import predefined_variables, resolve_pipeline
from .model import (
    FAILED,
    SKIPPED,
    SUCCEEDED,
    SUCCEEDED_WITH_ISSUES,
    JobResult,
    Pipeline,
    RunResult,
    Stage,
    StageResult,
)
from .remote import RemoteExecutor, ServiceConnection
from .runner import RunContext, run_job
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

DEFAULT_RUNS_DIR = ".relayci/runs"


def new_run_id() -> str:
    """Sortable, unique run id: UTC timestamp plus a short random suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ----------------------------------------------------------------------
# Planning
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunPlan:
    selected: List[str]
    skipped: List[str]
    reasons: Dict[str, str]


def plan_run(pipeline: Pipeline, *, only: Optional[List[str]] = None) -> RunPlan:
    """
    Decide which stages run.

    Rules:
      - If `only` is None/empty: select all stages.
      - Else: select exactly those stages; the rest are reported as skipped.
    """
    names = [s.name for s in pipeline.stages]
    if not only:
        return RunPlan(selected=names, skipped=[], reasons={n: "selected: default" for n in names})

    only_set = set(only)
    missing = sorted(n for n in only_set if n not in names)
    if missing:
        raise CIError(
            kind="UnknownStage",
            job="<planner>",
            step=None,
            message=f"Unknown stage(s) requested: {', '.join(missing)}",
            details={"known_stages": sorted(names)},
        )

    reasons: Dict[str, str] = {}
    selected: List[str] = []
    skipped: List[str] = []
    for n in names:
        if n in only_set:
            selected.append(n)
            reasons[n] = "selected: user requested via --only"
        else:
            skipped.append(n)
            reasons[n] = "not in --only list"
    return RunPlan(selected=selected, skipped=skipped, reasons=reasons)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def _stage_status(jobs: List[JobResult]) -> str:
    statuses = [j.status for j in jobs]
    if FAILED in statuses:
        return FAILED
    if statuses and all(s == SKIPPED for s in statuses):
        return SKIPPED
    if SUCCEEDED_WITH_ISSUES in statuses:
        return SUCCEEDED_WITH_ISSUES
    return SUCCEEDED


def _run_one_job(job, stage: Stage, dep_statuses: Dict[str, str], context: RunContext) -> JobResult:
    console = context.out
    if job.condition:
        try:
            ok = evaluate(job.condition, dependency_statuses=dep_statuses, variables=job.variables)
        except ConditionError as e:
            console.print_failure(job.name, f"Invalid condition: {e}", is_job=True)
            return JobResult(name=job.name, status=FAILED, error=f"Invalid condition: {e}")
        if not ok:
            reason = f"condition {job.condition} is false"
            console.print_job_skipped(job.name, reason)
            return JobResult(name=job.name, status=SKIPPED, error=reason)

    console.print_job_start(f"{stage.name}.{job.name}")
    try:
        return run_job(job, context)
    except CIError as e:
        console.print_failure(job.name, str(e), is_job=True)
        return JobResult(name=job.name, status=FAILED, error=str(e))


def _run_stage(stage: Stage, dep_statuses: Dict[str, str], context: RunContext, max_workers: int) -> StageResult:
    context.out.print_stage_start(stage.display_name or stage.name)
    if max_workers <= 1 or len(stage.jobs) == 1:
        jobs = [_run_one_job(j, stage, dep_statuses, context) for j in stage.jobs]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(_run_one_job, j, stage, dep_statuses, context) for j in stage.jobs]
            # keep document order in the result
            jobs = [f.result() for f in futures]
    return StageResult(name=stage.name, status=_stage_status(jobs), jobs=jobs)


def write_run_record(result: RunResult, runs_dir: str | Path) -> Path:
    """Write run.json atomically into <runs_dir>/<run_id>/."""
    run_dir = Path(runs_dir) / result.run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    path = run_dir / "run.json"
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    os.replace(tmp, path)
    return path


def run_pipeline(
    pipeline: Pipeline,
    *,
    artifacts: ArtifactStore,
    workspace: str | Path = ".",
    connections: Optional[Dict[str, ServiceConnection]] = None,
    run_id: Optional[str] = None,
    runs_dir: str | Path = DEFAULT_RUNS_DIR,
    max_workers: int = 1,
    only: Optional[List[str]] = None,
    default_timeout_minutes: float | None = None,
    console: Console | None = None,
    remote_factory: Callable[[ServiceConnection], RemoteExecutor] = RemoteExecutor,
) -> RunResult:
    """
    Public entry point for executing a pipeline.

    A pipeline that has not been resolved yet (built in memory with the
    DSL helpers) is resolved here against the predefined variables of
    this run.

    Returns:
        RunResult; also written to <runs_dir>/<run_id>/run.json.

    Raises:
        CIError: unknown stage names in `only`.
        PipelineDefinitionError: invalid stage graph.
    """
    console = console or get_console()
    run_id = run_id or new_run_id()
    if not pipeline.resolved:
        facts = source_facts(str(workspace))
        predefined = predefined_variables(
            run_id=run_id,
            workspace=workspace,
            run_dir=Path(runs_dir) / run_id,
            branch=facts["branch"],
            sha=facts["sha"],
        )
        pipeline = resolve_pipeline(pipeline, predefined=predefined)
    levels = stage_levels(pipeline)
    plan = plan_run(pipeline, only=only)
    deps = pipeline.resolved_dependencies()
    selected = set(plan.selected)
    if only:
        for s in pipeline.stages:
            console.print_plan_stage(s.name, plan.reasons[s.name])

    context = RunContext(
        run_id=run_id,
        workspace=Path(workspace).resolve(),
        artifacts=artifacts,
        connections=dict(connections or {}),
        default_timeout=default_timeout_minutes * 60 if default_timeout_minutes else None,
        console=console,
        remote_factory=remote_factory,
    )
    result = RunResult(run_id=context.run_id, pipeline=pipeline.name, status=SUCCEEDED, started_at=_now())
    stage_results: Dict[str, StageResult] = {}

    for level in levels:
        for name in level:
            stage = pipeline.stage(name)
            if name not in selected:
                stage_results[name] = StageResult(name=name, status=SKIPPED, reason=plan.reasons[name])
                console.print_stage_skipped(name, plan.reasons[name])
                continue

            # unselected stages drop out of the dependency set
            dep_statuses = {d: stage_results[d].status for d in deps[name] if d in selected}
            expression = stage.condition or DEFAULT_CONDITION
            try:
                should_run = evaluate(expression, dependency_statuses=dep_statuses, variables=stage.variables)
            except ConditionError as e:
                reason = f"invalid condition {expression!r}: {e}"
                stage_results[name] = StageResult(name=name, status=FAILED, reason=reason)
                console.print_failure(name, reason, is_job=True)
                continue

            if not should_run:
                shown = ", ".join(f"{d}={s}" for d, s in dep_statuses.items()) or "no dependencies"
                reason = f"condition {expression} is false ({shown})"
                stage_results[name] = StageResult(name=name, status=SKIPPED, reason=reason)
                console.print_stage_skipped(name, reason)
                continue

            log.debug("running stage %s with dependencies %s", name, dep_statuses)
            stage_results[name] = _run_stage(stage, dep_statuses, context, max_workers)

    # report in document order
    result.stages = {s.name: stage_results[s.name] for s in pipeline.stages}
    result.status = FAILED if any(r.status == FAILED for r in stage_results.values()) else SUCCEEDED
    result.artifacts = list(context.published)
    result.finished_at = _now()

    record = write_run_record(result, runs_dir)
    log.debug("run record written to %s", record)
    return result
