# loader.py
"""
Pipeline Definition Loader.

Turns a declarative pipeline document into the in-memory model:

    trigger:
      - main
    variables:
      sshEndpoint: deploy-vm
    stages:
      - stage: Build
        jobs:
          - job: build
            steps:
              - script: npm install && npm run build
              - publish: build
                artifact: webapp
      - stage: Deploy
        dependsOn: Build
        condition: succeeded()
        jobs:
          - job: deploy
            steps:
              - download: current
                artifact: webapp
              - task: CopyFilesOverSSH@0
                inputs:
                  sshEndpoint: $(sshEndpoint)
                  sourceFolder: $(Pipeline.Workspace)/webapp
                  targetFolder: /var/www/html

YAML documents are validated with pydantic; `.py` files are executed and
must define `pipeline()` or `PIPELINE` (see relayci.dsl).
"""
from __future__ import annotations

import logging
import re
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .conditions import parse as parse_condition
from .errors import ConditionError, PipelineDefinitionError
from .dag import stage_levels
from .dsl import pipeline as dsl_pipeline
from .model import Job, Pipeline, Stage, Step

log = logging.getLogger(__name__)

_MACRO_RE = re.compile(r"\$\(([A-Za-z0-9_.\-]+)\)")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StepDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    script: Optional[str] = None
    bash: Optional[str] = None
    publish: Optional[str] = None
    download: Optional[str] = None
    checkout: Optional[str] = None
    task: Optional[str] = None
    artifact: Optional[str] = None
    path: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    working_directory: Optional[str] = Field(None, alias="workingDirectory")
    env: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = Field(False, alias="continueOnError")
    timeout_in_minutes: Optional[float] = Field(None, alias="timeoutInMinutes")
    enabled: bool = True


class JobDocument(_Doc):
    job: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    pool: Any = None
    variables: Any = None
    working_directory: Optional[str] = Field(None, alias="workingDirectory")
    timeout_in_minutes: Optional[float] = Field(None, alias="timeoutInMinutes")
    condition: Optional[str] = None
    requires: List[str] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class StageDocument(_Doc):
    stage: str
    display_name: Optional[str] = Field(None, alias="displayName")
    depends_on: Union[str, List[str], None] = Field(None, alias="dependsOn")
    condition: Optional[str] = None
    variables: Any = None
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class PipelineDocument(_Doc):
    name: Optional[str] = None
    trigger: Any = None
    variables: Any = None
    pool: Any = None
    stages: Optional[List[Dict[str, Any]]] = None
    jobs: Optional[List[Dict[str, Any]]] = None
    steps: Optional[List[Dict[str, Any]]] = None


def _validate(model: type[BaseModel], raw: Any, where: str) -> Any:
    if not isinstance(raw, dict):
        raise PipelineDefinitionError(f"expected a mapping, got {type(raw).__name__}", where=where)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise PipelineDefinitionError(problems, where=where) from e


# ----------------------------------------------------------------------
# Small field parsers
# ----------------------------------------------------------------------

def _parse_variables(raw: Any, where: str) -> Dict[str, str]:
    """Accepts a mapping or a list of {name, value} entries (groups are ignored)."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): _stringify(v) for k, v in raw.items()}
    if isinstance(raw, list):
        out: Dict[str, str] = {}
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise PipelineDefinitionError("variable entries must be mappings", where=f"{where}[{i}]")
            if "group" in entry:
                log.debug("ignoring variable group %r", entry["group"])
                continue
            if "name" not in entry:
                raise PipelineDefinitionError("variable entry needs a 'name'", where=f"{where}[{i}]")
            out[str(entry["name"])] = _stringify(entry.get("value", ""))
        return out
    raise PipelineDefinitionError("variables must be a mapping or a list", where=where)


def _parse_trigger(raw: Any) -> tuple[List[str], List[str], bool]:
    """Return (include patterns, exclude patterns, enabled)."""
    if raw is None:
        return [], [], True
    if isinstance(raw, str):
        if raw.strip().lower() == "none":
            return [], [], False
        return [raw], [], True
    if isinstance(raw, list):
        return [str(b) for b in raw], [], True
    if isinstance(raw, dict):
        branches = raw.get("branches", {})
        if isinstance(branches, dict):
            include = [str(b) for b in branches.get("include", []) or []]
            exclude = [str(b) for b in branches.get("exclude", []) or []]
            return include, exclude, True
        if isinstance(branches, list):
            return [str(b) for b in branches], [], True
    raise PipelineDefinitionError("unsupported trigger format", where="trigger")


def _check_condition(expression: Optional[str], where: str) -> Optional[str]:
    if expression:
        try:
            parse_condition(expression)
        except ConditionError as e:
            raise PipelineDefinitionError(f"invalid condition: {e}", where=where) from e
    return expression


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _as_list(value: Any) -> List[str]:
    """Task inputs like `contents` may be a YAML list or a multi-line string."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


def _pool_name(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw.get("vmImage") or raw.get("name")
    return str(raw)


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

def _require(inputs: Dict[str, Any], key: str, task: str, where: str) -> Any:
    value = inputs.get(key.lower())
    if value in (None, ""):
        raise PipelineDefinitionError(f"task {task} requires input '{key}'", where=where)
    return value


def _task_step(doc: StepDocument, common: Dict[str, Any], where: str) -> Step:
    task = doc.task or ""
    inputs = {str(k).lower(): v for k, v in (doc.inputs or {}).items()}
    base = task.split("@", 1)[0].lower()

    if base in ("cmdline", "bash"):
        script = inputs.get("script")
        if script is None and base == "bash" and inputs.get("filepath"):
            script = f"bash {inputs['filepath']}"
        if script is None:
            raise PipelineDefinitionError(f"task {task} requires input 'script'", where=where)
        cwd = inputs.get("workingdirectory") or common["cwd"]
        return Step(run=str(script), **{**common, "cwd": cwd, "name": common["name"] or task})

    if base in ("publishbuildartifacts", "publishpipelineartifact"):
        path = inputs.get("pathtopublish") or inputs.get("targetpath") or inputs.get("path") \
            or "$(Build.ArtifactStagingDirectory)"
        artifact = inputs.get("artifactname") or inputs.get("artifact") or "drop"
        return Step(kind="publish", data={"artifact": str(artifact), "path": str(path)},
                    **{**common, "name": common["name"] or f"Publish {artifact}"})

    if base in ("downloadbuildartifacts", "downloadpipelineartifact"):
        artifact = inputs.get("artifactname") or inputs.get("artifact") or "drop"
        if base == "downloadbuildartifacts":
            root = inputs.get("downloadpath") or "$(System.ArtifactsDirectory)"
            path = f"{root}/{artifact}"
        else:
            path = inputs.get("path") or inputs.get("targetpath") or f"$(Pipeline.Workspace)/{artifact}"
        return Step(kind="download", data={"artifact": str(artifact), "path": str(path)},
                    **{**common, "name": common["name"] or f"Download {artifact}"})

    if base == "copyfilesoverssh":
        endpoint = _require(inputs, "sshEndpoint", task, where)
        target = _require(inputs, "targetFolder", task, where)
        data = {
            "connection": str(endpoint),
            "source_folder": str(inputs.get("sourcefolder") or "$(Build.SourcesDirectory)"),
            "contents": _as_list(inputs.get("contents")) or ["**"],
            "target_folder": str(target),
            "clean_target": _as_bool(inputs.get("cleantargetfolder", False)),
        }
        return Step(kind="ssh_copy", data=data, **{**common, "name": common["name"] or f"Copy files to {endpoint}"})

    if base == "ssh":
        endpoint = _require(inputs, "sshEndpoint", task, where)
        mode = str(inputs.get("runoptions", "commands")).lower()
        if mode == "inline":
            script = str(_require(inputs, "inline", task, where))
        elif mode == "commands":
            script = "\n".join(_as_list(_require(inputs, "commands", task, where)))
        elif mode == "script":
            # local script file, streamed to the remote shell
            path = Path(str(_require(inputs, "scriptPath", task, where)))
            if not path.is_file():
                raise PipelineDefinitionError(f"scriptPath not found: {path}", where=where)
            script = path.read_text(encoding="utf-8")
        else:
            raise PipelineDefinitionError(f"unknown runOptions {mode!r} for task {task}", where=where)
        return Step(kind="ssh_run", run=script, data={"connection": str(endpoint)},
                    **{**common, "name": common["name"] or f"Run commands on {endpoint}"})

    raise PipelineDefinitionError(f"unknown task {task!r}", where=where)


def _parse_step(raw: Any, where: str, index: int) -> Optional[Step]:
    doc: StepDocument = _validate(StepDocument, raw, where)
    if not doc.enabled:
        return None

    timeout = doc.timeout_in_minutes * 60 if doc.timeout_in_minutes else None
    common: Dict[str, Any] = {
        "name": doc.display_name or doc.name,
        "cwd": doc.working_directory,
        "env": {str(k): _stringify(v) for k, v in doc.env.items()},
        "condition": _check_condition(doc.condition, where),
        "continue_on_error": doc.continue_on_error,
        "timeout": timeout,
    }

    shapes = [k for k in ("script", "bash", "publish", "download", "checkout", "task") if getattr(doc, k) is not None]
    if len(shapes) != 1:
        raise PipelineDefinitionError(
            "a step needs exactly one of script/bash/publish/download/checkout/task", where=where
        )
    shape = shapes[0]

    if shape == "checkout":
        # the workspace is the checkout
        return None

    if shape in ("script", "bash"):
        text = doc.script if shape == "script" else doc.bash
        first = text.strip().splitlines()[0] if text.strip() else f"step {index + 1}"
        return Step(run=text, **{**common, "name": common["name"] or first})

    if shape == "publish":
        artifact = doc.artifact or "drop"
        return Step(kind="publish", data={"artifact": artifact, "path": doc.publish},
                    **{**common, "name": common["name"] or f"Publish {artifact}"})

    if shape == "download":
        if doc.download.lower() == "none":
            return None
        if not doc.artifact:
            raise PipelineDefinitionError("download step needs 'artifact'", where=where)
        path = doc.path or f"$(Pipeline.Workspace)/{doc.artifact}"
        return Step(kind="download", data={"artifact": doc.artifact, "path": path},
                    **{**common, "name": common["name"] or f"Download {doc.artifact}"})

    return _task_step(doc, common, where)


# ----------------------------------------------------------------------
# Jobs / stages / pipeline
# ----------------------------------------------------------------------

def _parse_job(raw: Any, where: str, index: int) -> Job:
    doc: JobDocument = _validate(JobDocument, raw, where)
    steps = []
    for i, raw_step in enumerate(doc.steps):
        step = _parse_step(raw_step, f"{where}.steps[{i}]", i)
        if step is not None:
            steps.append(step)
    if not steps:
        raise PipelineDefinitionError("job has no steps", where=where)
    return Job(
        name=doc.job or f"job{index + 1}",
        steps=steps,
        env={str(k): _stringify(v) for k, v in doc.env.items()},
        requires=list(doc.requires),
        working_directory=doc.working_directory,
        timeout_minutes=doc.timeout_in_minutes,
        pool=_pool_name(doc.pool),
        condition=_check_condition(doc.condition, where),
        variables=_parse_variables(doc.variables, f"{where}.variables"),
    )


def _parse_jobs(raw_jobs: List[Any], where: str) -> List[Job]:
    jobs = [_parse_job(j, f"{where}.jobs[{i}]", i) for i, j in enumerate(raw_jobs)]
    if not jobs:
        raise PipelineDefinitionError("stage has no jobs", where=where)
    names = [j.name for j in jobs]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise PipelineDefinitionError(f"duplicate job names: {dupes}", where=where)
    return jobs


def _parse_stage(raw: Any, where: str) -> Stage:
    doc: StageDocument = _validate(StageDocument, raw, where)
    depends_on: Optional[List[str]]
    if doc.depends_on is None:
        depends_on = None
    elif isinstance(doc.depends_on, str):
        depends_on = [doc.depends_on] if doc.depends_on else []
    else:
        depends_on = list(doc.depends_on)
    return Stage(
        name=doc.stage,
        jobs=_parse_jobs(doc.jobs, where),
        depends_on=depends_on,
        condition=_check_condition(doc.condition, where),
        variables=_parse_variables(doc.variables, f"{where}.variables"),
        display_name=doc.display_name,
    )


def parse_pipeline(document: Any, *, name: str = "pipeline") -> Pipeline:
    """
    Build an (unresolved) Pipeline from a parsed document.

    Raises:
        PipelineDefinitionError: with the location of the first problem found.
    """
    doc: PipelineDocument = _validate(PipelineDocument, document, "<root>")
    trigger, trigger_exclude, trigger_enabled = _parse_trigger(doc.trigger)

    if doc.stages is not None:
        stages = [_parse_stage(s, f"stages[{i}]") for i, s in enumerate(doc.stages)]
    elif doc.jobs is not None:
        stages = [Stage(name="__default", jobs=_parse_jobs(doc.jobs, "<root>"), depends_on=[])]
    elif doc.steps is not None:
        job = _parse_job({"job": "__default", "steps": doc.steps, "pool": doc.pool}, "<root>", 0)
        stages = [Stage(name="__default", jobs=[job], depends_on=[])]
    else:
        raise PipelineDefinitionError("pipeline needs 'stages', 'jobs' or 'steps'", where="<root>")

    if not stages:
        raise PipelineDefinitionError("pipeline has no stages", where="stages")

    pipeline = Pipeline(
        name=doc.name or name,
        stages=stages,
        variables=_parse_variables(doc.variables, "variables"),
        trigger=trigger,
        trigger_enabled=trigger_enabled,
        trigger_exclude=trigger_exclude,
    )
    # duplicate names, unknown dependencies and cycles
    stage_levels(pipeline)
    return pipeline


# ----------------------------------------------------------------------
# Variable resolution
# ----------------------------------------------------------------------

def expand(text: str, variables: Mapping[str, str]) -> str:
    """Replace $(name) macros; unknown names are left untouched."""
    lookup = {k.lower(): v for k, v in variables.items()}

    def _sub(m: re.Match) -> str:
        return lookup.get(m.group(1).lower(), m.group(0))

    return _MACRO_RE.sub(_sub, text)


def predefined_variables(
    *,
    run_id: str,
    workspace: str | Path,
    run_dir: str | Path,
    branch: str = "unknown",
    sha: str = "unknown",
) -> Dict[str, str]:
    """
    Variables every pipeline can reference.

    The workspace is the checked-out sources; each run gets its own
    directory for downloads and a staging subdirectory (`a/`) for outputs.
    """
    sources = str(Path(workspace).resolve())
    run_root = Path(run_dir).resolve()
    staging = str(run_root / "a")
    full_branch = branch if branch.startswith("refs/") or branch == "unknown" else f"refs/heads/{branch}"
    return {
        "Build.BuildId": run_id,
        "Build.SourceBranch": full_branch,
        "Build.SourceBranchName": full_branch.rsplit("/", 1)[-1],
        "Build.SourceVersion": sha,
        "Build.SourcesDirectory": sources,
        "Build.ArtifactStagingDirectory": staging,
        "System.ArtifactsDirectory": staging,
        "System.DefaultWorkingDirectory": sources,
        "Pipeline.Workspace": str(run_root),
    }


def _expand_value(value: Any, variables: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return expand(value, variables)
    if isinstance(value, list):
        return [_expand_value(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: _expand_value(v, variables) for k, v in value.items()}
    return value


def _merge(*layers: Mapping[str, str] | None) -> Dict[str, str]:
    """
    Stack raw variable layers (later wins, names compared case-insensitively),
    then expand macros in the merged values.
    """
    out: Dict[str, str] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            for existing in [k for k in out if k.lower() == key.lower()]:
                del out[existing]
            out[key] = value
    for _ in range(5):  # nested references, bounded
        expanded = {k: expand(v, out) for k, v in out.items()}
        if expanded == out:
            break
        out = expanded
    return out


def env_name(variable: str) -> str:
    """Variables are exposed to scripts as upper-case env vars with '.' -> '_'."""
    return re.sub(r"[^A-Za-z0-9_]", "_", variable).upper()


def _resolve_job(job: Job, variables: Dict[str, str]) -> Job:
    steps = [
        replace(
            s,
            name=expand(s.name, variables),
            run=expand(s.run, variables),
            cwd=expand(s.cwd, variables) if s.cwd else s.cwd,
            data=_expand_value(s.data, variables) if s.data else s.data,
            env={k: expand(v, variables) for k, v in s.env.items()},
        )
        for s in job.steps
    ]
    env = {env_name(k): v for k, v in variables.items()}
    env.update({k: expand(v, variables) for k, v in job.env.items()})
    return replace(
        job,
        steps=steps,
        env=env,
        working_directory=expand(job.working_directory, variables) if job.working_directory else None,
        variables=variables,
    )


def resolve_pipeline(
    pipeline: Pipeline,
    *,
    predefined: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> Pipeline:
    """
    Expand $(var) macros everywhere in the pipeline.

    Precedence (later wins): predefined < pipeline < stage < job < overrides.
    Layers are stacked before any macro is expanded, so a value built from
    an overridden variable picks up the override.
    """
    predefined = predefined or {}
    overrides = overrides or {}

    stages = []
    for stage in pipeline.stages:
        jobs = [
            _resolve_job(job, _merge(predefined, pipeline.variables, stage.variables, job.variables, overrides))
            for job in stage.jobs
        ]
        stage_vars = _merge(predefined, pipeline.variables, stage.variables, overrides)
        stages.append(replace(stage, jobs=jobs, variables=stage_vars))

    return replace(
        pipeline,
        stages=stages,
        variables=_merge(predefined, pipeline.variables, overrides),
        resolved=True,
    )


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------

def _load_python(path: Path) -> Pipeline:
    globals_dict = runpy.run_path(str(path), run_name=f"relayci_pipeline_{path.stem}")

    pipeline = globals_dict.get("PIPELINE")
    factory = globals_dict.get("pipeline")
    # `pipeline` may just be the imported DSL helper
    if pipeline is None and callable(factory) and factory is not dsl_pipeline:
        pipeline = factory()

    if not isinstance(pipeline, Pipeline):
        raise PipelineDefinitionError(
            "Python pipeline files must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)",
            where=str(path),
        )
    stage_levels(pipeline)
    return pipeline


def load_pipeline(
    path: str | Path,
    *,
    predefined: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> Pipeline:
    """
    Load, validate and resolve a pipeline file (.yml/.yaml or .py).

    Raises:
        FileNotFoundError: if the file does not exist.
        PipelineDefinitionError: if the document is invalid.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    suffix = p.suffix.lower()
    if suffix in (".yml", ".yaml"):
        try:
            with p.open("r", encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise PipelineDefinitionError(f"invalid YAML: {e}", where=p.name) from e
        pipeline = parse_pipeline(document, name=p.stem)
    elif suffix == ".py":
        pipeline = _load_python(p)
    else:
        raise PipelineDefinitionError(f"unsupported pipeline file type {p.suffix!r}", where=p.name)

    pipeline = replace(pipeline, source=str(p))
    return resolve_pipeline(pipeline, predefined=predefined, overrides=overrides)
