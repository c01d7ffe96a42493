import os
import subprocess
import time

import pytest

from git_heat import Commit, DiffOptions, PathDelta, ProgressReporter


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


class FakeRepo:
    """
    In-memory stand-in for GitRepository.

    `commits` are returned newest first; `diffs` maps (old_tree, new_tree)
    to the list of PathDelta the backend would report.
    """

    EMPTY_TREE = "empty"

    def __init__(self, commits, diffs=None, delays=None):
        self.commits = list(commits)
        self.diffs = diffs or {}
        self.delays = delays or {}
        self.diff_calls = []

    def iter_commits(self):
        yield from self.commits

    def empty_tree(self):
        return self.EMPTY_TREE

    def diff_trees(self, old_tree, new_tree, options: DiffOptions):
        self.diff_calls.append((old_tree, new_tree))
        delay = self.delays.get(new_tree)
        if delay:
            time.sleep(delay)
        return list(self.diffs.get((old_tree, new_tree), []))


def make_commit(name, seconds=1_700_000_000, offset=0):
    return Commit(
        sha=f"{name}-sha",
        tree=f"{name}-tree",
        author_seconds=seconds,
        author_offset=offset,
    )


@pytest.fixture
def rename_history():
    """
    Three commits, newest first:
      c3 renames old.txt -> new.txt
      c2 modifies old.txt
      c1 adds old.txt and keep.txt
    """
    from git_heat import DeltaStatus as S

    c3 = make_commit("c3", 1_700_200_000)
    c2 = make_commit("c2", 1_700_100_000)
    c1 = make_commit("c1", 1_700_000_000)
    diffs = {
        ("c2-tree", "c3-tree"): [PathDelta(S.RENAMED, "old.txt", "new.txt")],
        ("c1-tree", "c2-tree"): [PathDelta(S.MODIFIED, "old.txt", "old.txt")],
        ("empty", "c1-tree"): [
            PathDelta(S.ADDED, None, "old.txt"),
            PathDelta(S.ADDED, None, "keep.txt"),
        ],
    }
    return FakeRepo([c3, c2, c1], diffs)


def _git(repo, *args, date=None, input=None):
    env = dict(os.environ)
    if date:
        env["GIT_AUTHOR_DATE"] = date
        env["GIT_COMMITTER_DATE"] = date
    result = subprocess.run(
        ["git", "-C", str(repo)] + list(args),
        check=True,
        capture_output=True,
        text=True,
        input=input,
        env=env,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()

    _git(repo, "init")
    _git(repo, "config", "user.email", "tester@test.com")
    _git(repo, "config", "user.name", "Tester")
    _git(repo, "config", "commit.gpgsign", "false")

    # Commit 1 - add two files
    (repo / "old.txt").write_text("alpha\nbeta\ngamma\n", encoding="utf-8")
    (repo / "keep.txt").write_text("keep me around\n", encoding="utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "initial", date="2023-01-01T12:00:00+00:00")

    # Commit 2 - modify old.txt
    (repo / "old.txt").write_text("alpha\nbeta\ngamma\ndelta\n", encoding="utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "extend old", date="2023-02-01T12:00:00+00:00")

    # Commit 3 - rename old.txt -> new.txt
    _git(repo, "mv", "old.txt", "new.txt")
    _git(repo, "commit", "-m", "rename", date="2023-03-01T12:00:00+00:00")

    return str(repo)


@pytest.fixture
def empty_git_repo(tmp_path):
    repo = tmp_path / "empty"
    repo.mkdir()
    _git(repo, "init")
    return str(repo)
