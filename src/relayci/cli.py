# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from relayci.artifacts import ArtifactStore, prune_dirs
from relayci.config import load_config
from relayci.dag import stage_levels
from relayci.errors import ArtifactError, ConfigError, PipelineDefinitionError
from relayci.git_facts.git import repo_root, source_facts
from relayci.loader import load_pipeline, predefined_variables
from relayci.model import FAILED
from relayci.remote import load_connections
from relayci.scheduler import new_run_id, run_pipeline
from relayci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("relayci.yml", "relayci.yaml", "azure-pipelines.yml", "azure-pipelines.yaml")
DEFAULT_CONNECTIONS_FILE = ".relayci/connections.yml"


def find_pipeline_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all pipeline files in a directory.

    Returns:
        List of Path objects for pipeline files
    """
    found = [directory / name for name in DEFAULT_PIPELINE_FILES if (directory / name).exists()]
    found.extend(directory.glob("*_pipeline.py"))
    return sorted(set(found))


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  relayci run my_pipeline.yml",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create relayci.yml or specify a pipeline explicitly:\n  relayci run path/to/pipeline.yml",
        )
        sys.exit(1)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion=f"Specify a pipeline explicitly:\n  relayci run {files[0]}",
        )
        sys.exit(1)

    return files[0]


def parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--var")
        out[key.strip()] = value
    return out


def _repository_name(workspace: Path) -> str:
    try:
        return repo_root(str(workspace)).name
    except (subprocess.CalledProcessError, FileNotFoundError):
        return workspace.resolve().name


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--config", "config_path", default=None, help="Engine settings file (YAML)")
@click.pass_context
def cli(ctx, debug, config_path):
    """RelayCI: self-hosted stage/job/step pipeline runner."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("pipeline_file", required=False)
@click.option("--branch", default=None, help="Branch to run as (defaults to the current git branch)")
@click.option("--var", "variables", multiple=True, help="Override a pipeline variable (NAME=VALUE)")
@click.option("--only", multiple=True, help="Run only the named stage(s)")
@click.option("--workspace", default=None, help="Sources directory (default: .)")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--runs-dir", default=None, help="Directory for per-run records")
@click.option("--connections", default=None, help="Service connections file (YAML)")
@click.option("--workers", default=None, type=int, help="Parallel jobs per stage")
@click.option("--force/--no-force", default=False, help="Run even if the trigger does not match the branch")
@click.pass_context
def run(ctx, pipeline_file, branch, variables, only, workspace, artifact_dir, runs_dir, connections, workers, force):
    """Run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    overrides = parse_vars(variables)

    try:
        settings = load_config(
            ctx.obj.get("config_path"),
            overrides={
                "workspace": workspace,
                "artifact_dir": artifact_dir,
                "runs_dir": runs_dir,
                "connections_file": connections,
                "max_workers": workers,
            },
        )
        ws = Path(settings.workspace).resolve()
        facts = source_facts(str(ws))
        branch = branch or facts["branch"]
        run_id = new_run_id()

        predefined = predefined_variables(
            run_id=run_id,
            workspace=ws,
            run_dir=Path(settings.runs_dir) / run_id,
            branch=branch,
            sha=facts["sha"],
        )
        pipeline = load_pipeline(path, predefined=predefined, overrides=overrides)

        if not force and not pipeline.triggers_on(branch):
            console.print_not_triggered(branch, pipeline.trigger if pipeline.trigger_enabled else [])
            return

        conn_file = settings.connections_file
        if conn_file is None and Path(DEFAULT_CONNECTIONS_FILE).exists():
            conn_file = DEFAULT_CONNECTIONS_FILE
        conns = load_connections(conn_file) if conn_file else {}

        console.print_run_started(
            repository=_repository_name(ws),
            pipeline=path.name,
            run_id=run_id,
            stage_count=len(pipeline.stages),
        )

        store = ArtifactStore(settings.artifact_dir)
        result = run_pipeline(
            pipeline,
            artifacts=store,
            workspace=ws,
            connections=conns,
            run_id=run_id,
            runs_dir=settings.runs_dir,
            max_workers=settings.max_workers,
            only=list(only) or None,
            default_timeout_minutes=settings.default_timeout_minutes,
            console=console,
        )

        console.print_results(result.statuses(), result.status)
        removed = store.prune(keep=settings.keep_runs)
        if removed:
            console.print_debug(f"pruned artifacts of {len(removed)} old run(s)")
        # per-run directories hold run.json and downloaded copies
        removed = prune_dirs(settings.runs_dir, settings.keep_runs)
        if removed:
            console.print_debug(f"pruned {len(removed)} old run directory(ies)")

        if result.status == FAILED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (PipelineDefinitionError, ConfigError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("pipeline_file", required=False)
@click.pass_context
def validate(ctx, pipeline_file):
    """Load a pipeline and print its stage order."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        console.print_header(f"{pipeline.name} ({path.name})")
        for i, level in enumerate(stage_levels(pipeline), start=1):
            for name in level:
                stage = pipeline.stage(name)
                jobs = ", ".join(f"{j.name}[{len(j.steps)}]" for j in stage.jobs)
                console.print_info(f"{i}. {name}: {jobs}")
        console.print_info("OK")
    except (PipelineDefinitionError, FileNotFoundError) as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.group()
def artifacts():
    """Inspect and prune stored artifacts."""


@artifacts.command("list")
@click.argument("run_id")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.pass_context
def artifacts_list(ctx, run_id, artifact_dir):
    """List artifacts published by a run."""
    console = get_console()
    try:
        settings = load_config(ctx.obj.get("config_path"), overrides={"artifact_dir": artifact_dir})
        refs = ArtifactStore(settings.artifact_dir).list(run_id)
    except (ConfigError, ArtifactError) as e:
        console.print_error("Could not list artifacts", str(e))
        sys.exit(1)

    if not refs:
        console.print_info(f"No artifacts for run {run_id}")
        return
    for ref in refs:
        console.print_info(f"{ref.name}  {ref.file_count} file(s)  {ref.size} bytes  sha256:{ref.digest[:12]}")


@artifacts.command("prune")
@click.option("--keep", default=None, type=int, help="Number of newest runs to keep")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.pass_context
def artifacts_prune(ctx, keep, artifact_dir):
    """Delete artifacts and run directories of all but the newest runs."""
    console = get_console()
    try:
        settings = load_config(ctx.obj.get("config_path"), overrides={"artifact_dir": artifact_dir, "keep_runs": keep})
    except ConfigError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(1)

    removed = ArtifactStore(settings.artifact_dir).prune(keep=settings.keep_runs)
    run_dirs = prune_dirs(settings.runs_dir, settings.keep_runs)
    console.print_info(f"Removed {len(removed)} run(s)")
    if run_dirs:
        console.print_info(f"Removed {len(run_dirs)} run directory(ies) from {settings.runs_dir}")
    for run_id in removed:
        console.print_info(f"  {run_id}")


if __name__ == "__main__":
    cli()
