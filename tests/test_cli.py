# tests/test_cli.py
import json
import os
import textwrap

import pytest
from click.testing import CliRunner

from relayci.cli import cli


PIPELINE = """
variables:
  msg: default
stages:
  - stage: Build
    jobs:
      - job: build
        steps:
          - script: mkdir -p out && echo $(msg) > out/msg.txt
          - publish: out
            artifact: drop
  - stage: Test
    jobs:
      - job: test
        steps:
          - download: current
            artifact: drop
          - script: cat $(Pipeline.Workspace)/drop/msg.txt
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("RELAYCI_WORKSPACE", "RELAYCI_ARTIFACT_DIR", "RELAYCI_RUNS_DIR", "RELAYCI_CONNECTIONS"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path


def _write(path, text):
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def _only_run(project):
    runs = list((project / ".relayci" / "runs").iterdir())
    assert len(runs) == 1
    return json.loads((runs[0] / "run.json").read_text())


def test_run_discovers_pipeline_and_succeeds(project):
    _write(project / "relayci.yml", PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--var", "msg=from-cli"])
    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "RESULTS" in result.output

    record = _only_run(project)
    assert record["status"] == "succeeded"
    assert record["artifacts"] == ["drop"]
    last_step = record["stages"][1]["jobs"][0]["steps"][-1]
    assert last_step["log_tail"] == "from-cli"


def test_run_failure_exits_1(project):
    _write(project / "ci.yml", "steps:\n  - script: exit 3\n")
    result = CliRunner().invoke(cli, ["run", "ci.yml"])
    assert result.exit_code == 1
    assert _only_run(project)["status"] == "failed"


def test_trigger_mismatch_is_not_run(project):
    _write(project / "relayci.yml", "trigger: [main]\nsteps:\n  - script: echo hi\n")
    result = CliRunner().invoke(cli, ["run", "--branch", "feature/x"])
    assert result.exit_code == 0
    assert "NOT TRIGGERED" in result.output
    assert not (project / ".relayci" / "runs").exists()

    forced = CliRunner().invoke(cli, ["run", "--branch", "feature/x", "--force"])
    assert forced.exit_code == 0, forced.output
    assert "RESULTS" in forced.output


def test_unknown_only_stage_exits_1(project):
    _write(project / "relayci.yml", PIPELINE)
    assert CliRunner().invoke(cli, ["run", "--only", "Nope"]).exit_code == 1


def test_invalid_pipeline_exits_1(project):
    _write(project / "relayci.yml", "stages:\n  - stage: A\n    jobs: []\n")
    assert CliRunner().invoke(cli, ["run"]).exit_code == 1
    assert CliRunner().invoke(cli, ["validate"]).exit_code == 1


def test_bad_var_is_usage_error(project):
    _write(project / "relayci.yml", PIPELINE)
    assert CliRunner().invoke(cli, ["run", "--var", "novalue"]).exit_code == 2


def test_no_pipeline_found(project):
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1


def test_multiple_pipelines_found(project):
    _write(project / "relayci.yml", PIPELINE)
    _write(project / "azure-pipelines.yml", PIPELINE)
    assert CliRunner().invoke(cli, ["validate"]).exit_code == 1


def test_validate_prints_stage_order(project):
    _write(project / "relayci.yml", PIPELINE)
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "1. Build: build[2]" in result.output
    assert "2. Test: test[2]" in result.output


def test_artifacts_list_and_prune(project):
    _write(project / "relayci.yml", PIPELINE)
    assert CliRunner().invoke(cli, ["run"]).exit_code == 0
    run_id = _only_run(project)["run_id"]

    listed = CliRunner().invoke(cli, ["artifacts", "list", run_id])
    assert listed.exit_code == 0
    assert listed.output.startswith("drop")

    pruned = CliRunner().invoke(cli, ["artifacts", "prune", "--keep", "0"])
    assert pruned.exit_code == 0
    assert run_id in pruned.output
    assert "No artifacts" in CliRunner().invoke(cli, ["artifacts", "list", run_id]).output
    assert list((project / ".relayci" / "runs").iterdir()) == []


def test_run_prunes_old_run_directories(project, monkeypatch):
    _write(project / "relayci.yml", PIPELINE)
    monkeypatch.setenv("RELAYCI_KEEP_RUNS", "1")
    runs = project / ".relayci" / "runs"

    assert CliRunner().invoke(cli, ["run"]).exit_code == 0
    (first,) = list(runs.iterdir())
    assert (first / "drop" / "msg.txt").exists()
    stamp = first.stat().st_mtime - 100
    os.utime(first, (stamp, stamp))
    os.utime(project / ".relayci" / "artifacts" / first.name, (stamp, stamp))

    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 0, result.output
    remaining = list(runs.iterdir())
    assert len(remaining) == 1
    assert remaining[0].name != first.name
    assert (remaining[0] / "run.json").exists()
    assert [p.name for p in (project / ".relayci" / "artifacts").iterdir()] == [remaining[0].name]


def test_only_prints_stage_plan(project):
    _write(project / "relayci.yml", PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--only", "Build"])
    assert result.exit_code == 0, result.output
    assert "Build (selected: user requested via --only)" in result.output
    assert "Test (not in --only list)" in result.output
