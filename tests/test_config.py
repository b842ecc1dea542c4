# tests/test_config.py
import pytest

from relayci.config import Settings, deep_merge, load_config
from relayci.errors import ConfigError


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    s = load_config(environ={})
    assert s == Settings()
    assert s.max_workers == 1


def test_file_env_and_overrides_layering(tmp_path):
    cfg = tmp_path / "relayci.yml"
    cfg.write_text("engine:\n  max_workers: 2\n  keep_runs: 3\n  artifact_dir: from-file\n")
    s = load_config(
        cfg,
        environ={"RELAYCI_KEEP_RUNS": "7", "RELAYCI_ARTIFACT_DIR": "from-env"},
        overrides={"artifact_dir": "from-cli", "max_workers": None},
    )
    assert s.max_workers == 2
    assert s.keep_runs == 7
    assert s.artifact_dir == "from-cli"


def test_bare_mapping_file(tmp_path):
    cfg = tmp_path / "c.yml"
    cfg.write_text("connections_file: conns.yml\n")
    assert load_config(cfg, environ={}).connections_file == "conns.yml"


def test_missing_explicit_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yml", environ={})


def test_invalid_values(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigError, match="Invalid engine settings"):
        load_config(None, environ={"RELAYCI_MAX_WORKERS": "many"})


def test_invalid_yaml_root(tmp_path):
    cfg = tmp_path / "c.yml"
    cfg.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(cfg, environ={})


def test_deep_merge():
    assert deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4}) == {
        "a": {"x": 1, "y": 3},
        "b": 1,
        "c": 4,
    }
