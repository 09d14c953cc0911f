"""
Tests for the repository watcher against real temporary Git repositories.
"""

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest
from git import GitCommandError, Repo
from git.objects import Commit

from services.commit_watcher.watcher import (
    RepositoryWatcher,
    WatcherState,
    file_stats_for_commit,
)
from shared.errors import ExtractionError, WatcherStartError
from shared.models import ProjectConfig


def init_repo(path: Path) -> Repo:
    repo = Repo.init(path)
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test Dev")
        config.set_value("user", "email", "dev@example.com")
        config.set_value("commit", "gpgsign", "false")
    return repo


def commit_file(repo: Repo, name: str, content: str, message: str) -> str:
    path = Path(repo.working_tree_dir) / name
    path.write_text(content)
    repo.git.add(name)
    repo.git.commit("-m", message)
    return repo.head.commit.hexsha


@pytest.fixture
def repo(tmp_path):
    return init_repo(tmp_path / "repo")


@pytest.fixture
def channel():
    return asyncio.Queue()


def make_watcher(repo, channel, **kwargs):
    project = ProjectConfig(path=repo.working_tree_dir, name="demo")
    kwargs.setdefault("debounce_ms", 60_000)
    return RepositoryWatcher(project, channel, **kwargs)


class TestFileStats:
    """Test cases for file_stats_for_commit."""

    def test_root_commit_has_no_files(self, repo):
        commit_file(repo, "a.txt", "one\n", "Initial commit")

        assert file_stats_for_commit(repo.head.commit) == []

    def test_counts_lines(self, repo):
        commit_file(repo, "a.txt", "one\n", "Initial commit")
        commit_file(repo, "a.txt", "one\ntwo\nthree\n", "Extend a")

        files = file_stats_for_commit(repo.head.commit)

        assert len(files) == 1
        assert files[0].path == "a.txt"
        assert files[0].lines_added == 2
        assert files[0].lines_deleted == 0

    def test_diff_failure_raises_extraction_error(self, repo):
        commit_file(repo, "a.txt", "one\n", "Initial commit")
        commit_file(repo, "b.txt", "two\n", "Add b")
        commit = repo.head.commit

        def broken_stats(self):
            raise GitCommandError("diff", 128)

        with patch.object(Commit, "stats", new=property(broken_stats)):
            with pytest.raises(ExtractionError):
                file_stats_for_commit(commit)


class TestExtraction:
    """Test cases for commit extraction and baseline tracking."""

    @pytest.mark.asyncio
    async def test_initial_run_reports_newest_commits_oldest_first(self, repo, channel):
        shas = [commit_file(repo, f"f{i}.txt", f"{i}\n", f"Commit {i}") for i in range(7)]
        watcher = make_watcher(repo, channel, initial_commit_limit=5)

        commits = await watcher.extract()

        assert [c.sha for c in commits] == shas[2:]
        assert commits[-1].message == "Commit 6"
        assert commits[0].author_email == "dev@example.com"
        assert watcher.baseline_sha == shas[-1]

    @pytest.mark.asyncio
    async def test_commits_after_baseline_in_order(self, repo, channel):
        baseline = commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel)
        await watcher.start()
        try:
            assert watcher.baseline_sha == baseline
            second = commit_file(repo, "b.txt", "b\n", "Second")
            third = commit_file(repo, "c.txt", "c\n", "Third")

            commits = await watcher.extract()

            assert [c.sha for c in commits] == [second, third]
            assert baseline not in [c.sha for c in commits]
            assert watcher.baseline_sha == third
            assert commits[0].files[0].path == "b.txt"
            assert commits[0].files[0].lines_added == 1
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_nothing_new_keeps_baseline(self, repo, channel):
        baseline = commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel)
        await watcher.start()
        try:
            assert await watcher.extract() == []
            assert watcher.baseline_sha == baseline
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_extraction_failure_degrades_to_empty_files(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel)
        await watcher.start()
        try:
            commit_file(repo, "b.txt", "b\n", "Second")
            with patch(
                "services.commit_watcher.watcher.file_stats_for_commit",
                side_effect=ExtractionError("diff failed"),
            ):
                commits = await watcher.extract()

            assert len(commits) == 1
            assert commits[0].files == []
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_unborn_repository(self, repo, channel):
        watcher = make_watcher(repo, channel)
        await watcher.start()
        try:
            assert watcher.baseline_sha is None
            assert await watcher.extract() == []
        finally:
            await watcher.stop()


class TestLifecycle:
    """Test cases for starting and stopping watchers."""

    @pytest.mark.asyncio
    async def test_start_on_non_repository_fails(self, tmp_path, channel):
        project = ProjectConfig(path=str(tmp_path / "missing"), name="missing")
        watcher = RepositoryWatcher(project, channel)

        with pytest.raises(WatcherStartError):
            await watcher.start()

        assert watcher.state == WatcherState.IDLE

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel)

        await watcher.start()
        assert watcher.state == WatcherState.WATCHING
        await watcher.stop()
        await watcher.stop()

        assert watcher.state == WatcherState.IDLE

    @pytest.mark.asyncio
    async def test_reflog_path_uses_git_dir(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel)
        await watcher.start()
        try:
            assert watcher.reflog_path == Path(repo.git_dir) / "logs" / "HEAD"
        finally:
            await watcher.stop()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_commit_is_published_to_channel(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel, debounce_ms=50)
        await watcher.start()
        try:
            new_sha = commit_file(repo, "b.txt", "b\n", "Watched commit")

            batch = await asyncio.wait_for(channel.get(), timeout=10)

            assert batch.project.name == "demo"
            assert [c.sha for c in batch.commits] == [new_sha]
        finally:
            await watcher.stop()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_burst_of_commits_is_one_batch(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel, debounce_ms=1000)
        await watcher.start()
        try:
            shas = [commit_file(repo, f"f{i}.txt", f"{i}\n", f"Burst {i}") for i in range(3)]

            batch = await asyncio.wait_for(channel.get(), timeout=10)
            await asyncio.sleep(2)

            assert [c.sha for c in batch.commits] == shas
            assert channel.empty()
        finally:
            await watcher.stop()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stop_waits_for_running_extraction(self, repo, channel):
        commit_file(repo, "a.txt", "a\n", "Initial")
        watcher = make_watcher(repo, channel, debounce_ms=10)
        real_extract = watcher.extract
        started = asyncio.Event()

        async def slow_extract():
            started.set()
            await asyncio.sleep(0.2)
            return await real_extract()

        watcher.extract = slow_extract
        await watcher.start()
        new_sha = commit_file(repo, "b.txt", "b\n", "Committed before stop")
        await asyncio.wait_for(started.wait(), timeout=10)

        await watcher.stop()

        assert channel.qsize() == 1
        assert [c.sha for c in channel.get_nowait().commits] == [new_sha]
