from hypothesis import given
from hypothesis import strategies as st

from fakes import UPSTREAM, FakeClient, git_error
from git_tether.git_wrapper import ConflictError
from git_tether.reconciler import Outcome, Reconciler

PULL_PHASE = {"shelve", "pull_rebase", "unshelve"}
PUSH_PHASE = {"stage_tracked_modifications", "has_staged_changes", "commit", "push"}

FALLIBLE_CALLS = [
    "upstream",
    "in_progress_operation",
    "has_remote_divergence",
    "has_local_changes",
    "shelve",
    "unshelve",
    "pull_rebase",
    "stage_tracked_modifications",
    "has_staged_changes",
    "commit",
    "push",
    "has_unpushed_commits",
]

failure_strategy = st.dictionaries(
    keys=st.sampled_from(FALLIBLE_CALLS),
    values=st.sampled_from(["transient", "conflict"]),
    max_size=3,
)

client_strategy = st.builds(
    FakeClient,
    upstream=st.sampled_from([UPSTREAM, None]),
    diverged=st.booleans(),
    local_changes=st.lists(st.booleans(), min_size=1, max_size=3),
    staged=st.booleans(),
    unpushed=st.booleans(),
    in_progress=st.sampled_from([None, None, "rebase", "merge"]),
    shelve_creates_entry=st.booleans(),
    failures=failure_strategy.map(
        lambda spec: {
            name: (
                ConflictError(name, [name], 1, "CONFLICT")
                if kind == "conflict"
                else git_error(name)
            )
            for name, kind in spec.items()
        }
    ),
)


@given(client=client_strategy)
def test_cycle_never_raises_and_always_releases_lock(client: FakeClient) -> None:
    """
    Property: Whatever the repository state and whichever operations fail,
    run_cycle() returns normally and the lock is free afterwards.
    """
    reconciler = Reconciler(client)

    result = reconciler.run_cycle()

    assert isinstance(result.outcome, Outcome)
    assert not reconciler.lock.held

    # A second cycle must be able to acquire the lock again.
    assert reconciler.run_cycle().outcome is not Outcome.SKIPPED


@given(client=client_strategy)
def test_pull_phase_completes_before_push_phase(client: FakeClient) -> None:
    """
    Property: Every pull-phase call happens strictly before any push-phase call.
    """
    Reconciler(client).run_cycle()

    pull_idx = [i for i, c in enumerate(client.calls) if c in PULL_PHASE]
    push_idx = [i for i, c in enumerate(client.calls) if c in PUSH_PHASE]
    if pull_idx and push_idx:
        assert max(pull_idx) < min(push_idx)


@given(client=client_strategy)
def test_shelve_only_with_local_changes(client: FakeClient) -> None:
    """
    Property: shelve is only ever preceded by a has_local_changes query, and
    unshelve only follows a successful shelve and pull.
    """
    Reconciler(client).run_cycle()

    calls = client.calls
    if "shelve" in calls:
        assert calls[calls.index("shelve") - 1] == "has_local_changes"
    if "unshelve" in calls:
        assert "shelve" not in client.failures
        assert "pull_rebase" not in client.failures
        assert calls.index("shelve") < calls.index("pull_rebase") < calls.index(
            "unshelve"
        )


@given(client=client_strategy)
def test_commit_only_when_something_is_staged(client: FakeClient) -> None:
    """
    Property: commit is never invoked unless the staged-changes check said yes.
    """
    Reconciler(client).run_cycle()

    if "commit" in client.calls:
        assert client._answers["has_staged_changes"] is True
        assert client.calls[client.calls.index("commit") - 1] == "has_staged_changes"


@given(client=client_strategy)
def test_no_upstream_means_no_further_calls(client: FakeClient) -> None:
    """
    Property: Without an upstream, the only call made is the upstream query.
    """
    Reconciler(client).run_cycle()

    if client._answers["upstream"] is None and "upstream" not in client.failures:
        assert client.calls == ["upstream"]
