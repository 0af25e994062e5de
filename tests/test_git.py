import shutil
import subprocess

import pytest

from flowci.git_facts.git import current_branch, get_remote_url, head_sha, is_dirty, repo_root

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path):
    git(tmp_path, "init", "-q", "-b", "trunk")
    git(tmp_path, "config", "user.email", "ci@example.com")
    git(tmp_path, "config", "user.name", "ci")
    (tmp_path / "README").write_text("x\n")
    git(tmp_path, "add", "README")
    git(tmp_path, "commit", "-q", "-m", "init")
    return tmp_path


def test_trigger_facts(repo):
    assert repo_root(str(repo)).resolve() == repo.resolve()
    assert current_branch(str(repo)) == "trunk"
    assert len(head_sha(str(repo))) == 40
    assert not is_dirty(str(repo))

    (repo / "new.txt").write_text("y\n")
    assert is_dirty(str(repo))


def test_detached_head_has_no_branch(repo):
    git(repo, "checkout", "-q", "--detach")
    assert current_branch(str(repo)) is None


def test_remote_url(repo):
    git(repo, "remote", "add", "origin", "https://example.com/acme/app.git")
    assert get_remote_url("origin", cwd=str(repo)) == "https://example.com/acme/app.git"
    with pytest.raises(subprocess.CalledProcessError):
        get_remote_url("upstream", cwd=str(repo))
