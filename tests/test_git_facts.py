# tests/test_git_facts.py
import shutil
import subprocess

import pytest

from relayci.git_facts.git import current_branch, head_sha, is_dirty, repo_root, source_facts

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    def git(*args):
        subprocess.run(
            ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
            cwd=tmp_path, check=True, capture_output=True,
        )

    git("init", "-q")
    git("checkout", "-q", "-b", "main")
    git("commit", "-q", "--allow-empty", "-m", "init")
    return tmp_path


@needs_git
def test_facts_in_repo(repo):
    assert repo_root(str(repo)).resolve() == repo.resolve()
    assert current_branch(str(repo)) == "main"
    assert len(head_sha(str(repo))) == 40
    assert source_facts(str(repo)) == {"branch": "main", "sha": head_sha(str(repo))}


@needs_git
def test_dirty_tree(repo):
    assert not is_dirty(str(repo))
    (repo / "new.txt").write_text("x")
    assert is_dirty(str(repo))


@needs_git
def test_outside_repo_falls_back_to_unknown(tmp_path):
    assert source_facts(str(tmp_path)) == {"branch": "unknown", "sha": "unknown"}
