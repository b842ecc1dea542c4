# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from .model import Job, Pipeline, Stage, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    condition: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=condition,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def publish(artifact: str, path: str, *, name: str | None = None, condition: str | None = None) -> Step:
    """Publish `path` (file or directory) as a named artifact of the run."""
    return Step(
        name=name or f"Publish {artifact}",
        kind="publish",
        data={"artifact": artifact, "path": path},
        condition=condition,
    )


def download(artifact: str, path: str | None = None, *, name: str | None = None) -> Step:
    """Download an artifact published earlier in the run (default: $(Pipeline.Workspace)/<artifact>)."""
    return Step(
        name=name or f"Download {artifact}",
        kind="download",
        data={"artifact": artifact, "path": path or f"$(Pipeline.Workspace)/{artifact}"},
    )


def ssh_copy(
    connection: str,
    source_folder: str,
    target_folder: str,
    *,
    contents: Sequence[str] = ("**",),
    clean_target: bool = False,
    name: str | None = None,
) -> Step:
    return Step(
        name=name or f"Copy files to {connection}",
        kind="ssh_copy",
        data={
            "connection": connection,
            "source_folder": source_folder,
            "target_folder": target_folder,
            "contents": list(contents),
            "clean_target": clean_target,
        },
    )


def ssh_run(connection: str, script: str, *, name: str | None = None, timeout: float | None = None) -> Step:
    return Step(
        name=name or f"Run commands on {connection}",
        kind="ssh_run",
        run=script,
        data={"connection": connection},
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Job / stage / pipeline helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    timeout_minutes: float | None = None,
    condition: str | None = None,
    variables: Optional[Dict[str, str]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        requires=requires or [],
        timeout_minutes=timeout_minutes,
        condition=condition,
        variables={k: str(v) for k, v in (variables or {}).items()},
    )


def stage(
    name: str,
    *jobs: Job,
    depends_on: str | List[str] | None = None,
    condition: str | None = None,
    variables: Optional[Dict[str, str]] = None,
    display_name: str | None = None,
) -> Stage:
    if not jobs:
        raise ValueError(f"stage({name!r}) must have at least one job")
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    return Stage(
        name=name,
        jobs=list(jobs),
        depends_on=depends_on,
        condition=condition,
        variables={k: str(v) for k, v in (variables or {}).items()},
        display_name=display_name,
    )


def pipeline(
    name: str,
    *stages: Stage,
    variables: Optional[Dict[str, str]] = None,
    trigger: Optional[List[str]] = None,
) -> Pipeline:
    """
    Pipeline definition helper for Python pipeline files.

    Users can write:
        from relayci import pipeline, stage, job, sh

        PIPELINE = pipeline(
            "webapp",
            stage("Build", job("build", sh("install", "npm ci"))),
            stage("Test", job("test", sh("unit", "npm test"))),
        )

    A file that defines its own `pipeline()` function should import this
    helper under another name (e.g. `from relayci import pipeline as define`).
    """
    if not stages:
        raise ValueError(f"pipeline({name!r}) must have at least one stage")
    return Pipeline(
        name=name,
        stages=list(stages),
        variables={k: str(v) for k, v in (variables or {}).items()},
        trigger=list(trigger or []),
    )
