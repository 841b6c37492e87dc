import datetime
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME, GIT_LOCK_FILES, NETWORK_ENV, STASH_MESSAGE

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """A git invocation exited non-zero or timed out.

    Attributes:
        operation (str): The git subcommand that failed (e.g. 'pull').
        command (list[str]): The full argument list passed to git.
        returncode (int | None): The exit code, or None on timeout.
        stderr (str): The tool's error output.
    """

    def __init__(
        self,
        operation: str,
        command: list[str],
        returncode: int | None,
        stderr: str,
    ):
        self.operation = operation
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"Git error ({' '.join(command)}): {self.stderr}")

    @classmethod
    def from_error(cls, err: "GitError") -> "GitError":
        """Re-labels an existing failure as this error type."""
        return cls(err.operation, err.command, err.returncode, err.stderr)


class ConflictError(GitError):
    """A failure that needs a human: rebase conflict, stash conflict, push rejection."""


@dataclass(frozen=True)
class Upstream:
    """The remote branch a local branch tracks.

    Attributes:
        remote (str): The remote name (e.g. 'origin').
        branch (str): The branch name on the remote (e.g. 'main').
        ref (str): The local remote-tracking ref (e.g. 'refs/remotes/origin/main').
    """

    remote: str
    branch: str
    ref: str

    @property
    def short(self) -> str:
        """The abbreviated name git shows for this upstream (e.g. 'origin/main')."""
        return self.ref.removeprefix("refs/remotes/").removeprefix("refs/heads/")

    def __str__(self) -> str:
        return self.short


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This is the production implementation of the reconciler's version control
    client. Every operation is a blocking `git` subprocess call; failures surface
    as `GitError`, and failures that leave the repository needing manual
    attention surface as `ConflictError`.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float | None): Per-command timeout in seconds.
    """

    def __init__(self, path: Path, timeout: float | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float | None, optional): Seconds before a git command is
                                              abandoned. Defaults to None (no limit).

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.timeout = timeout
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @property
    def git_dir(self) -> Path:
        return self.path / ".git"

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to return stdout. Stderr is always
                                        captured so failures can be reported.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to None.

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            GitError: If the git command returns a non-zero exit code or times out.
        """
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=True,
                env=env,
                timeout=self.timeout,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise GitError(
                args[0], args, e.returncode, e.stderr or e.stdout or str(e)
            ) from e
        except subprocess.TimeoutExpired as e:
            raise GitError(
                args[0], args, None, f"timed out after {self.timeout}s"
            ) from e

    def _succeeds(self, args: list[str]) -> bool:
        """Runs a git command whose exit status is the answer (e.g. `--quiet` diffs)."""
        try:
            self._run(args)
            return True
        except GitError as e:
            if e.returncode == 1:
                return False
            raise

    @staticmethod
    def _network_env() -> dict[str, str]:
        env = os.environ.copy()
        env.update(NETWORK_ENV)
        return env

    # --- Queries ---

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The name of the current branch, or '' when HEAD is detached.
        """
        return self._run(["branch", "--show-current"])

    def status_porcelain(self) -> list[str]:
        """Returns the porcelain (machine-readable) status of the repository.

        Returns:
            list[str]: A list of status lines returned by `git status --porcelain`.
        """
        output = self._run(["status", "--porcelain"])
        return output.splitlines() if output else []

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'refs/stash').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def upstream(self) -> Upstream | None:
        """Resolves the tracking branch of the checked-out branch.

        Returns:
            Upstream | None: The configured upstream, or None if HEAD is detached
                             or the branch has no tracking configuration.
        """
        branch = self.current_branch()
        if not branch:
            return None

        output = self._run(
            [
                "for-each-ref",
                "--format=%(upstream:remotename)%00%(upstream:remoteref)%00%(upstream)",
                f"refs/heads/{branch}",
            ]
        )
        parts = output.split("\x00")
        if len(parts) != 3 or not all(parts):
            return None

        remote, remote_ref, tracking_ref = parts
        return Upstream(
            remote=remote,
            branch=remote_ref.removeprefix("refs/heads/"),
            ref=tracking_ref,
        )

    def in_progress_operation(self) -> str | None:
        """Names the git operation currently in progress, if any.

        Returns:
            str | None: 'rebase', 'merge', 'cherry-pick', 'revert' or 'bisect',
                        or None if the repository is idle.
        """
        for marker, operation in GIT_LOCK_FILES.items():
            if (self.git_dir / marker).exists():
                return operation
        return None

    def has_local_changes(self) -> bool:
        """True if the working tree differs from the last commit (untracked included)."""
        return bool(self.status_porcelain())

    def has_staged_changes(self) -> bool:
        """True if the index differs from HEAD."""
        return not self._succeeds(["diff", "--cached", "--quiet"])

    def conflicted_files(self) -> list[str]:
        """Lists paths with unresolved merge conflicts."""
        output = self._run(["diff", "--name-only", "--diff-filter=U"])
        return output.splitlines() if output else []

    def fetch(self, remote: str) -> None:
        """Updates remote-tracking refs for the given remote."""
        self._run(["fetch", remote], env=self._network_env())

    def tracking_counts(self, upstream: Upstream) -> tuple[int, int]:
        """Counts commits on either side of the local/upstream split.

        Args:
            upstream (Upstream): The upstream to compare against.

        Returns:
            tuple[int, int]: (ahead, behind), i.e. commits only on HEAD and commits
                             only on the upstream. (0, 0) if the output is unparsable.
        """
        output = self._run(
            ["rev-list", "--left-right", "--count", f"{upstream.ref}...HEAD"]
        )
        try:
            behind, ahead = (int(n) for n in output.split())
        except ValueError:
            logger.warning(f"Unexpected rev-list output for {upstream}: {output!r}")
            return 0, 0
        return ahead, behind

    def has_remote_divergence(self, upstream: Upstream) -> bool:
        """Fetches the upstream remote and compares tips.

        Args:
            upstream (Upstream): The upstream to compare against.

        Returns:
            bool: True if HEAD and the upstream tip are different commits.
        """
        self.fetch(upstream.remote)
        return self.rev_parse("HEAD") != self.rev_parse(upstream.ref)

    def has_unpushed_commits(self, upstream: Upstream) -> bool:
        """True if HEAD carries commits the upstream does not have."""
        ahead, _ = self.tracking_counts(upstream)
        return ahead > 0

    def get_last_commit_time(self, rev: str = "HEAD") -> str:
        """Gets the relative time since the last commit on a revision.

        Returns:
            str: A human-readable relative time string (e.g., '2 hours ago').
        """
        return self._run(["log", "-1", "--format=%cr", rev])

    # --- Mutations ---

    def shelve(self) -> bool:
        """Stashes uncommitted edits, untracked files included.

        Returns:
            bool: True if a stash entry was created. git exits zero without
                  creating one when there is nothing to save.
        """
        before = self.rev_parse("refs/stash")
        timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        message = f"{STASH_MESSAGE} {timestamp}"
        self._run(["stash", "push", "--include-untracked", "-m", message])
        after = self.rev_parse("refs/stash")
        return after is not None and after != before

    def unshelve(self) -> None:
        """Re-applies and drops the most recent stash entry.

        Raises:
            ConflictError: If the stash could not be applied cleanly. git keeps the
                           entry in the stash list in that case.
            GitError: For any other failure.
        """
        try:
            self._run(["stash", "pop"])
        except GitError as e:
            if self.conflicted_files() or "conflict" in e.stderr.lower():
                raise ConflictError.from_error(e) from e
            raise

    def pull_rebase(self, upstream: Upstream) -> None:
        """Fetches and replays local commits on top of the upstream tip.

        Args:
            upstream (Upstream): The upstream to pull from.

        Raises:
            ConflictError: If the rebase stopped on a conflict.
            GitError: For any other failure (network, auth, dirty tree).
        """
        try:
            self._run(
                ["pull", "--rebase", upstream.remote, upstream.branch],
                env=self._network_env(),
            )
        except GitError as e:
            if self.in_progress_operation() == "rebase":
                raise ConflictError.from_error(e) from e
            raise

    def stage_tracked_modifications(self) -> None:
        """Stages modified and deleted tracked files. New files are left alone."""
        self._run(["add", "--update"], capture=False)

    def commit(self, message: str) -> None:
        """Creates a new commit from the index. Hooks run as usual."""
        self._run(["commit", "-m", message], capture=False)

    def push(self, upstream: Upstream) -> None:
        """Publishes HEAD to the upstream branch.

        Raises:
            ConflictError: If the remote rejected the update (it has moved on).
            GitError: For any other failure.
        """
        try:
            self._run(
                ["push", upstream.remote, f"HEAD:{upstream.branch}"],
                env=self._network_env(),
            )
        except GitError as e:
            stderr = e.stderr.lower()
            if "rejected" in stderr or "non-fast-forward" in stderr:
                raise ConflictError.from_error(e) from e
            raise
