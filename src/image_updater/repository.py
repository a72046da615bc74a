# ABOUTME: Repository session manager: clone, edit, commit and push one git remote
# ABOUTME: One lock per repository, one throwaway clone per webhook call

"""
Isolated, serialized access to a remote git repository.

=============================================================================
LIFECYCLE OF ONE WEBHOOK CALL
=============================================================================

    repository = Repository(config)          # once, at startup

    async with repository.lock:              # one writer per remote
        async with repository.session() as session:
            # fresh clone in a private scratch directory
            commit = deployment.apply(session.worktree, tag, user)
            if commit:
                await session.push(timeout=...)
        # scratch directory removed here, whatever happened

Every call clones from scratch. That costs a full single-branch clone per
webhook, and buys the guarantee that nothing (dirty files, stale refs, a
half-finished commit from a failed push) leaks from one call to the next.

=============================================================================
WHY THREADS?
=============================================================================

GitPython drives the `git` binary synchronously. The server is asyncio, so
clone and push run in worker threads via asyncio.to_thread(). Requests for
other repositories keep being served while one repository clones.

If the awaiting request is cancelled (timeout, client gone) the worker thread
cannot be interrupted. run_blocking() waits for it to finish before letting
the cancellation through, so the repository lock is never released while a
git process from the cancelled call is still touching the remote.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote, urlsplit, urlunsplit

import git
import structlog
from git import RemoteProgress
from git.remote import PushInfo

from image_updater.utils.logging import mask_secrets

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from image_updater.config import RepositoryConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Never let git block on an interactive credential prompt, and give up on
# HTTP transfers that stall below 1 KiB/s for a minute.
GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_HTTP_LOW_SPEED_LIMIT": "1024",
    "GIT_HTTP_LOW_SPEED_TIME": "60",
}


class RepositoryError(Exception):
    """
    A git operation failed.

    `details` carries transport output (progress lines, stderr) with secrets
    masked. It is meant for debug logs, never for HTTP responses.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = mask_secrets(message)
        self.details = mask_secrets(details) or None
        super().__init__(self.message)


class TransportLog(RemoteProgress):
    """Collects git's progress and error output for diagnostics."""

    def __init__(self) -> None:
        super().__init__()
        self.lines: list[str] = []

    def update(
        self,
        op_code: int,  # noqa: ARG002 - Required by RemoteProgress API
        cur_count: str | float,  # noqa: ARG002 - Required by RemoteProgress API
        max_count: str | float | None = None,  # noqa: ARG002 - Required by RemoteProgress API
        message: str = "",
    ) -> None:
        if message:
            self.lines.append(message)

    def line_dropped(self, line: str) -> None:
        self.lines.append(line)

    @property
    def text(self) -> str:
        return "\n".join([*self.lines, *self.error_lines])


def authenticated_url(url: str, username: str, password: str) -> str:
    """
    Embed basic auth credentials in an HTTP(S) clone URL.

    Other schemes (ssh, file, plain paths) and empty credentials are
    returned unchanged.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not (username or password):
        return url
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port:
        host = f"{host}:{parts.port}"
    userinfo = quote(username, safe="")
    if password:
        userinfo = f"{userinfo}:{quote(password, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


# =============================================================================
# WORKTREE
# =============================================================================


class Worktree:
    """
    The checked-out files of a session's clone.

    Paths are relative to the repository root and may not escape it.
    Reads and writes are byte exact: no newline translation, UTF-8 only.
    """

    def __init__(self, repo: git.Repo) -> None:
        self._repo = repo
        self.root = Path(repo.working_tree_dir or "").resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root):
            raise RepositoryError(f"path {path!r} is outside the repository")
        return target

    def read_text(self, path: str) -> str:
        try:
            return self._resolve(path).read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RepositoryError(f"failed to read {path}: {e}") from e

    def write_text(self, path: str, text: str) -> None:
        try:
            self._resolve(path).write_bytes(text.encode("utf-8"))
        except OSError as e:
            raise RepositoryError(f"failed to write {path}: {e}") from e

    def stage(self, path: str) -> None:
        try:
            self._repo.index.add([str(self._resolve(path).relative_to(self.root))])
        except (OSError, git.GitError) as e:
            raise RepositoryError(f"failed to stage {path}: {e}") from e

    def commit(self, message: str) -> str:
        """Commit the index with the clone's configured identity; return the commit id."""
        try:
            reader = self._repo.config_reader()
            author = git.Actor.author(reader)
            committer = git.Actor.committer(reader)
            commit = self._repo.index.commit(message, author=author, committer=committer)
        except (OSError, ValueError, git.GitError) as e:
            raise RepositoryError(f"failed to commit: {e}") from e
        return commit.hexsha


# =============================================================================
# SESSION
# =============================================================================


class RepositorySession:
    """
    One throwaway clone of a repository.

    Owned by exactly one webhook call. fetch() must be followed by exactly
    one discard(), on every path; Repository.session() guarantees that.
    """

    def __init__(self, config: RepositoryConfig, scratch_root: Path | None = None) -> None:
        self._config = config
        self._scratch_root = scratch_root
        self._scratch: Path | None = None
        self._repo: git.Repo | None = None
        self._worktree: Worktree | None = None

    @property
    def is_active(self) -> bool:
        return self._repo is not None

    @property
    def branch(self) -> str:
        if self._config.branch:
            return self._config.branch
        return self._require_repo().active_branch.name

    @property
    def worktree(self) -> Worktree:
        repo = self._require_repo()
        if self._worktree is None:
            self._worktree = Worktree(repo)
        return self._worktree

    def _require_repo(self) -> git.Repo:
        if self._repo is None:
            raise RepositoryError("repository session is not active; call fetch() first")
        return self._repo

    @property
    def _remote_url(self) -> str:
        return authenticated_url(
            self._config.url,
            self._config.username,
            self._config.password.get_secret_value(),
        )

    # -------------------------------------------------------------------------
    # FETCH
    # -------------------------------------------------------------------------

    async def fetch(self) -> None:
        """
        Clone the configured branch into a brand new scratch directory.

        Single branch, no tags. The committer identity from the repository
        configuration is written into the clone's config afterwards.

        Raises:
            RepositoryError: Clone or configuration failed (auth, network,
                unknown branch, ...). `details` holds git's output.
        """
        if self._scratch is not None:
            raise RepositoryError("repository session already fetched")
        try:
            self._scratch = Path(
                tempfile.mkdtemp(prefix=f"image-updater-{self._config.name}-", dir=self._scratch_root)
            )
        except OSError as e:
            raise RepositoryError(f"failed to create scratch directory: {e}") from e
        await run_blocking(self._clone, self._scratch / "worktree")

    def _clone(self, target: Path) -> None:
        progress = TransportLog()
        options: dict[str, Any] = {"single_branch": True, "no_tags": True}
        if self._config.branch:
            options["branch"] = self._config.branch

        try:
            repo = git.Repo.clone_from(
                self._remote_url,
                target,
                progress=progress,
                env=GIT_ENV,
                **options,
            )
        except git.GitCommandError as e:
            raise RepositoryError(
                f"clone of {self._config.url} failed: {e.stderr.strip() or e}",
                details="\n".join(filter(None, [progress.text, str(e)])),
            ) from e
        self._repo = repo

        try:
            with repo.config_writer() as writer:
                writer.set_value("user", "name", self._config.committer_name)
                writer.set_value("user", "email", self._config.committer_email)
        except (OSError, git.GitError) as e:
            raise RepositoryError(f"configuring repository failed: {e}") from e

        # An empty remote clones fine but has nothing to update
        try:
            head = repo.head.commit.hexsha
        except ValueError as e:
            raise RepositoryError(
                f"branch {self._config.branch or 'HEAD'} of {self._config.url} has no commits"
            ) from e

        logger.debug(
            "Repository cloned",
            repository=self._config.name,
            branch=self.branch,
            head=head,
        )

    # -------------------------------------------------------------------------
    # PUSH
    # -------------------------------------------------------------------------

    async def push(self, timeout: float | None = None) -> None:
        """
        Push the current branch upstream with the clone credentials.

        Not retried: a rejected push (someone else pushed in between, branch
        protection) is reported and the webhook caller can try again.

        Args:
            timeout: Seconds after which the git process is killed.

        Raises:
            RepositoryError: The push failed or was rejected. `details`
                carries git's progress output.
        """
        await run_blocking(self._push, timeout)

    def _push(self, timeout: float | None) -> None:
        repo = self._require_repo()
        progress = TransportLog()
        refspec = f"HEAD:refs/heads/{self.branch}"
        try:
            results = repo.remote("origin").push(
                refspec=refspec,
                progress=progress,
                kill_after_timeout=timeout,
                env=GIT_ENV,
            )
        except git.GitCommandError as e:
            raise RepositoryError(
                f"push failed: {e.stderr.strip() or e}",
                details="\n".join(filter(None, [progress.text, str(e)])),
            ) from e

        # GitPython reports rejected refs as flags instead of raising
        for info in results:
            if info.flags & (PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED):
                raise RepositoryError(
                    f"push failed: {info.summary.strip() or 'rejected'}",
                    details=progress.text,
                )
        if not results:
            raise RepositoryError("push failed: no result from remote", details=progress.text)

        logger.debug("Repository pushed", repository=self._config.name, refspec=refspec)

    # -------------------------------------------------------------------------
    # DISCARD
    # -------------------------------------------------------------------------

    def discard(self) -> None:
        """Close the clone and delete its scratch directory. Safe to call twice."""
        if self._repo is not None:
            self._repo.close()
        if self._scratch is not None:
            shutil.rmtree(self._scratch, ignore_errors=True)
        self._repo = None
        self._worktree = None
        self._scratch = None


# =============================================================================
# REPOSITORY
# =============================================================================


class Repository:
    """
    A configured remote plus the lock that serializes writers.

    Holds no per-request state; sessions are created per call.
    """

    def __init__(self, config: RepositoryConfig, scratch_root: Path | None = None) -> None:
        self.config = config
        self.lock = asyncio.Lock()
        self._scratch_root = scratch_root

    @property
    def name(self) -> str:
        return self.config.name

    def new_session(self) -> RepositorySession:
        return RepositorySession(self.config, scratch_root=self._scratch_root)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[RepositorySession]:
        """
        Fetch a fresh session and discard it on exit, however the block ends.

        A failed fetch is discarded too before the error propagates.
        """
        session = self.new_session()
        try:
            await session.fetch()
            yield session
        finally:
            session.discard()


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """
    Run blocking git work in a thread, outliving our own cancellation.

    On cancellation the thread is awaited before CancelledError propagates,
    so callers holding a lock keep it until git has really stopped.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Git operation failed after cancellation", error=str(task.exception()))
        raise
