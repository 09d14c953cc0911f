"""
Repository watcher.

Each watcher tracks a baseline commit for one repository and watches the
HEAD reflog (``<git dir>/logs/HEAD``), which git appends to on every commit,
checkout, merge or rebase step. Reflog writes are debounced so a burst of ref
updates triggers one extraction. New commits are published to the
dispatcher's channel as a ``CommitBatch``, oldest first.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from shared.debounce import Debouncer, debounce
from shared.errors import ExtractionError, WatcherStartError
from shared.models import CommitBatch, CommitData, CommitFile, ProjectConfig

DEFAULT_DEBOUNCE_MS = 2000
DEFAULT_INITIAL_COMMIT_LIMIT = 5


class WatcherState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"


class ReflogEventHandler(FileSystemEventHandler):
    """Forwards changes to one reflog file onto the event loop."""

    def __init__(self, reflog_path: Path, loop: asyncio.AbstractEventLoop, callback):
        super().__init__()
        self.reflog_path = reflog_path.resolve()
        self.loop = loop
        self.callback = callback

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(p).resolve() == self.reflog_path for p in paths)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ("created", "modified", "moved", "closed"):
            return
        if not self._matches(event) or self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.callback)


def file_stats_for_commit(commit) -> List[CommitFile]:
    """Per-file insertion/deletion counts against the first parent.

    Raises:
        ExtractionError: if the diff cannot be computed
    """
    if not commit.parents:
        return []

    try:
        stats = commit.stats.files
    except (GitCommandError, ValueError) as e:
        raise ExtractionError(f"Could not diff {commit.hexsha[:8]}: {e}") from e

    return [
        CommitFile.from_counts(
            str(path), counts.get("insertions", 0), counts.get("deletions", 0)
        )
        for path, counts in stats.items()
    ]


class RepositoryWatcher:
    """Watches one repository and publishes new commits."""

    def __init__(
        self,
        project: ProjectConfig,
        channel: "asyncio.Queue[CommitBatch]",
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        initial_commit_limit: int = DEFAULT_INITIAL_COMMIT_LIMIT,
        logger: Optional[logging.Logger] = None,
    ):
        self.project = project
        self.channel = channel
        self.initial_commit_limit = initial_commit_limit
        self.logger = logger or logging.getLogger(__name__)
        self.state = WatcherState.IDLE

        self._repo: Optional[Repo] = None
        self._baseline_sha: Optional[str] = None
        self._observer: Optional[Observer] = None
        self._debounced: Debouncer = debounce(self._handle_change, debounce_ms)
        self._extract_lock = asyncio.Lock()

    @property
    def baseline_sha(self) -> Optional[str]:
        return self._baseline_sha

    @property
    def reflog_path(self) -> Path:
        if self._repo is None:
            return Path(self.project.path) / ".git" / "logs" / "HEAD"
        return Path(self._repo.git_dir) / "logs" / "HEAD"

    def _open_repo(self) -> Repo:
        try:
            return Repo(self.project.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise WatcherStartError(f"Not a Git repository: {self.project.path}") from e

    def _head_sha(self) -> Optional[str]:
        try:
            return self._repo.head.commit.hexsha
        except ValueError:
            # Unborn branch: no commits yet
            return None

    async def start(self) -> None:
        """Record the baseline and begin watching the HEAD reflog.

        Raises:
            WatcherStartError: if the path is not a readable repository or
                cannot be watched. The watcher stays idle.
        """
        if self.state == WatcherState.WATCHING:
            return

        self.logger.info(f"Starting git watcher for {self.project.path}")
        repo = self._open_repo()
        self._repo = repo

        try:
            self._baseline_sha = await asyncio.to_thread(self._head_sha)
        except (GitCommandError, OSError) as e:
            self.logger.warning(f"Could not get initial commit for {self.project.path}: {e}")
            self._baseline_sha = None

        if self._baseline_sha:
            self.logger.debug(f"Starting from commit {self._baseline_sha[:8]}")
        else:
            self.logger.debug(f"No baseline commit for {self.project.path}")

        reflog = self.reflog_path
        if reflog.parent.is_dir():
            watch_dir, recursive = reflog.parent, False
        else:
            watch_dir, recursive = Path(repo.git_dir), True

        handler = ReflogEventHandler(reflog, asyncio.get_running_loop(), self._debounced.trigger)
        observer = Observer()
        try:
            observer.schedule(handler, str(watch_dir), recursive=recursive)
            observer.start()
        except OSError as e:
            raise WatcherStartError(f"Cannot watch {watch_dir}: {e}") from e

        self._observer = observer
        self.state = WatcherState.WATCHING
        self.logger.info(f"Watching {self.project.path} for commits")

    async def stop(self) -> None:
        """Stop watching. Safe to call more than once.

        A pending debounce is dropped; an extraction that already started is
        allowed to finish and publish its batch.
        """
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)

        self._debounced.cancel()
        await self._debounced.wait()

        if observer is not None:
            self.logger.info(f"Stopped watching {self.project.path}")
        self.state = WatcherState.IDLE

    def _list_new_commits(self) -> List[CommitData]:
        if self._repo is None:
            self._repo = self._open_repo()

        baseline = self._baseline_sha
        if baseline:
            raw_commits = list(self._repo.iter_commits(f"{baseline}..HEAD"))
        else:
            raw_commits = list(self._repo.iter_commits("HEAD", max_count=self.initial_commit_limit))

        commits: List[CommitData] = []
        for commit in raw_commits:
            if commit.hexsha == baseline:
                continue

            try:
                files = file_stats_for_commit(commit)
            except ExtractionError as e:
                self.logger.debug(str(e))
                files = []

            commits.append(
                CommitData(
                    sha=commit.hexsha,
                    message=commit.summary if isinstance(commit.summary, str) else "",
                    author_name=commit.author.name or "",
                    author_email=commit.author.email or "",
                    author_date=commit.authored_datetime.isoformat(),
                    files=files,
                )
            )

        commits.reverse()
        return commits

    async def extract(self) -> List[CommitData]:
        """
        Collect commits made since the baseline, oldest first.

        Without a baseline the newest ``initial_commit_limit`` commits are
        reported. The baseline moves to the newest commit only when something
        was found.

        Returns:
            List[CommitData]: New commits in chronological order
        """
        async with self._extract_lock:
            try:
                commits = await asyncio.to_thread(self._list_new_commits)
            except (GitCommandError, ValueError, OSError, WatcherStartError) as e:
                self.logger.error(f"Failed to get commits for {self.project.path}: {e}")
                return []

            if commits:
                self._baseline_sha = commits[-1].sha
            return commits

    async def _handle_change(self) -> None:
        self.logger.debug(f"Git activity detected in {self.project.path}")
        commits = await self.extract()

        if not commits:
            self.logger.debug("No new commits found")
            return

        self.logger.info(f"Found {len(commits)} new commit(s) in {self.project.name}")
        await self.channel.put(CommitBatch(project=self.project, commits=commits))
