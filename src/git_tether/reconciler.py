"""The reconciliation state machine.

One `Reconciler` guards one working tree. Each call to `run_cycle()` performs a
serialized pull-then-push attempt against the branch's upstream:

1. Resolve the upstream (warn and stop if there is none).
2. Pull phase: if the tips differ, stash local edits, rebase onto the upstream,
   and restore the edits.
3. Push phase: stage tracked modifications, commit, and push.

A `SyncLock` makes overlapping cycles impossible: a cycle that starts while
another is in flight returns immediately without touching the repository.
Failures never escape a cycle; they are logged by phase and the next tick tries
again.
"""

import datetime
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .constants import APP_NAME, DEFAULT_COMMIT_MESSAGE
from .git_wrapper import ConflictError, GitError, Upstream

logger = logging.getLogger(APP_NAME)


class VersionControlClient(Protocol):
    """The version control operations the reconciler depends on."""

    def upstream(self) -> Upstream | None: ...

    def in_progress_operation(self) -> str | None: ...

    def has_local_changes(self) -> bool: ...

    def has_remote_divergence(self, upstream: Upstream) -> bool: ...

    def shelve(self) -> bool: ...

    def unshelve(self) -> None: ...

    def pull_rebase(self, upstream: Upstream) -> None: ...

    def stage_tracked_modifications(self) -> None: ...

    def has_staged_changes(self) -> bool: ...

    def commit(self, message: str) -> None: ...

    def push(self, upstream: Upstream) -> None: ...

    def has_unpushed_commits(self, upstream: Upstream) -> bool: ...


class Outcome(Enum):
    """How a cycle ended."""

    SKIPPED = "skipped"
    UNCONFIGURED = "unconfigured"
    BLOCKED = "blocked"
    IDLE = "idle"
    PULLED = "pulled"
    PUSHED = "pushed"
    PULL_FAILED = "pull_failed"
    RESTORE_FAILED = "restore_failed"
    PUSH_FAILED = "push_failed"
    ERROR = "error"

    @property
    def failed(self) -> bool:
        return self in (
            Outcome.PULL_FAILED,
            Outcome.RESTORE_FAILED,
            Outcome.PUSH_FAILED,
            Outcome.ERROR,
        )


@dataclass
class CycleResult:
    """Summary of one cycle.

    Attributes:
        outcome (Outcome): The terminal state of the cycle.
        pulled (bool): Whether upstream changes were rebased in.
        pushed (bool): Whether local commits were published.
        error (GitError | None): The failure that ended the cycle, if any.
    """

    outcome: Outcome
    pulled: bool = False
    pushed: bool = False
    error: GitError | None = None


class SyncLock:
    """Process-wide flag that is set while a cycle runs.

    Acquisition never blocks: a caller that finds the lock held is told so and
    is expected to skip its work.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def try_acquire(self) -> Iterator[bool]:
        """Acquires the lock if it is free.

        Yields:
            bool: True if this caller now owns the lock (it is released when the
                  block exits, however it exits), False if it was already held.
        """
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()


def default_commit_message(now: datetime.datetime | None = None) -> str:
    """Builds the generated commit message with an ISO-8601 UTC timestamp."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return DEFAULT_COMMIT_MESSAGE.format(timestamp=_format_timestamp(now))


def _format_timestamp(now: datetime.datetime) -> str:
    return now.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Reconciler:
    """Keeps a working tree and its upstream branch in step.

    Attributes:
        client (VersionControlClient): The repository being reconciled.
        commit_message (str | None): Operator override for commit messages.
        notifier (Callable[[str, str], None] | None): Called with (title, message)
            when a failure needs manual resolution.
        name (str): Label used in log lines.
        lock (SyncLock): Guards against overlapping cycles.
    """

    def __init__(
        self,
        client: VersionControlClient,
        commit_message: str | None = None,
        notifier: Callable[[str, str], None] | None = None,
        name: str = "repo",
    ):
        self.client = client
        self.commit_message = commit_message
        self.notifier = notifier
        self.name = name
        self.lock = SyncLock()

    def run_cycle(self) -> CycleResult:
        """Runs one reconciliation attempt.

        Never raises. The lock is released before this returns.

        Returns:
            CycleResult: What the cycle did and how it ended.
        """
        with self.lock.try_acquire() as acquired:
            if not acquired:
                logger.info(f"SKIPPED {self.name}: Cycle already running.")
                return CycleResult(Outcome.SKIPPED)

            logger.debug(f"CYCLE {self.name}: Starting.")
            try:
                return self._run_locked()
            except GitError as e:
                # Failures before either phase starts (upstream, in-progress checks).
                logger.error(f"ERROR {self.name}: git {e.operation} failed: {e.stderr}")
                return CycleResult(Outcome.ERROR, error=e)
            except Exception:
                logger.exception(f"ERROR {self.name}: Unexpected failure during cycle")
                return CycleResult(Outcome.ERROR)

    def _run_locked(self) -> CycleResult:
        # Step A: resolve upstream.
        upstream = self.client.upstream()
        if upstream is None:
            logger.warning(
                f"UNCONFIGURED {self.name}: No upstream branch set. Skipping sync."
            )
            return CycleResult(Outcome.UNCONFIGURED)

        if operation := self.client.in_progress_operation():
            logger.warning(
                f"BLOCKED {self.name}: A {operation} is in progress. "
                "Manual resolution required."
            )
            return CycleResult(Outcome.BLOCKED)

        # Step B: pull phase.
        try:
            diverged = self.client.has_remote_divergence(upstream)
        except GitError as e:
            self._report("PULL ERROR", e)
            return CycleResult(Outcome.PULL_FAILED, error=e)

        pulled = False
        if diverged:
            if failure := self._sync_from_upstream(upstream):
                return failure
            pulled = True

        # Step C: push phase.
        result = self._publish(upstream, diverged)
        result.pulled = pulled
        if result.outcome is Outcome.IDLE and pulled:
            result.outcome = Outcome.PULLED
        return result

    def _publish(self, upstream: Upstream, diverged: bool) -> CycleResult:
        """Commits local edits, or pushes commits a previous cycle left behind."""
        try:
            local_changes = self.client.has_local_changes()
        except GitError as e:
            self._report("PUSH ERROR", e)
            return CycleResult(Outcome.PUSH_FAILED, error=e)

        if local_changes:
            if result := self._sync_to_upstream(upstream):
                return result

        # Commits stranded by a rejected push only show up as divergence.
        if diverged:
            try:
                pending = self.client.has_unpushed_commits(upstream)
            except GitError as e:
                self._report("PUSH ERROR", e)
                return CycleResult(Outcome.PUSH_FAILED, error=e)
            if pending:
                logger.info(
                    f"PUSH {self.name}: Publishing pending commits to {upstream}."
                )
                return self._push(upstream)

        if not local_changes:
            logger.info(f"IDLE {self.name}: No local changes to push.")
        return CycleResult(Outcome.IDLE)

    def _sync_from_upstream(self, upstream: Upstream) -> CycleResult | None:
        """Rebases onto the upstream without losing uncommitted edits.

        Returns:
            CycleResult | None: The failed result if the phase could not complete,
                                otherwise None.
        """
        logger.info(f"PULL {self.name}: Pulling changes from {upstream}...")

        shelved = False
        try:
            if self.client.has_local_changes():
                shelved = self.client.shelve()
        except GitError as e:
            self._report("PULL ERROR", e)
            return CycleResult(Outcome.PULL_FAILED, error=e)
        if shelved:
            logger.info(f"SHELVE {self.name}: Local edits stashed.")

        try:
            self.client.pull_rebase(upstream)
        except GitError as e:
            self._report("PULL ERROR", e)
            if shelved:
                logger.warning(
                    f"PULL ERROR {self.name}: Local edits remain in the stash. "
                    "Restore them with 'git stash pop' once resolved."
                )
            return CycleResult(Outcome.PULL_FAILED, error=e)

        logger.info(f"PULL {self.name}: Pulled latest changes.")

        if shelved:
            try:
                self.client.unshelve()
            except GitError as e:
                self._report("RESTORE ERROR", e)
                return CycleResult(Outcome.RESTORE_FAILED, pulled=True, error=e)
            logger.info(f"UNSHELVE {self.name}: Local edits restored.")

        return None

    def _sync_to_upstream(self, upstream: Upstream) -> CycleResult | None:
        """Commits tracked modifications and publishes them.

        Returns:
            CycleResult | None: None when staging left nothing to commit.
        """
        logger.info(f"PUSH {self.name}: Local changes detected, pushing to {upstream}...")

        try:
            self.client.stage_tracked_modifications()
            if not self.client.has_staged_changes():
                logger.info(
                    f"IDLE {self.name}: Only untracked changes present. Nothing to commit."
                )
                return None

            message = self._build_commit_message()
            self.client.commit(message)
        except GitError as e:
            self._report("COMMIT ERROR", e)
            return CycleResult(Outcome.PUSH_FAILED, error=e)

        logger.info(f"COMMIT {self.name}: {message}")
        return self._push(upstream)

    def _push(self, upstream: Upstream) -> CycleResult:
        try:
            self.client.push(upstream)
        except GitError as e:
            self._report("PUSH ERROR", e)
            return CycleResult(Outcome.PUSH_FAILED, error=e)

        logger.info(f"SUCCESS {self.name}: Pushed to {upstream}.")
        return CycleResult(Outcome.PUSHED, pushed=True)

    def _build_commit_message(self) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        if self.commit_message:
            return self.commit_message.replace("{timestamp}", _format_timestamp(now))
        return default_commit_message(now)

    def _report(self, tag: str, error: GitError) -> None:
        """Logs a phase failure, flagging the ones a human has to resolve."""
        if isinstance(error, ConflictError):
            logger.error(
                f"{tag} {self.name}: git {error.operation} needs manual resolution: "
                f"{error.stderr}"
            )
            if self.notifier:
                self.notifier(
                    "Git Tether Conflict",
                    f"{self.name}: {error.operation} needs manual resolution",
                )
        else:
            logger.error(f"{tag} {self.name}: git {error.operation} failed: {error.stderr}")
