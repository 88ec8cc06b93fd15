import pytest

from portal_reconciler.core.diff import diff
from portal_reconciler.core.driver import (
    ConvergenceDriver,
    CycleState,
    OrderingPolicy,
    Phase,
    PhaseStatus,
)
from portal_reconciler.core.entities import Collection
from portal_reconciler.core.errors import ConvergenceInterrupted, PartialConvergenceError


@pytest.fixture
def scenario(address_profile, make_policy):
    """A is new, B changed, C removed."""
    current = Collection([make_policy("b", max_size="1Gb"), make_policy("c")], order_id="o1")
    desired = Collection([make_policy("a"), make_policy("b", max_size="2Gb")], order_id="o1")
    return current, desired, diff(address_profile, current, desired)


def test_create_first_order_and_batching(fake_remote, address_profile, make_policy):
    current = Collection([make_policy("b1", max_size="1"), make_policy("b2", max_size="1"), make_policy("c")])
    desired = Collection([
        make_policy("a1"), make_policy("a2"),
        make_policy("b1", max_size="2"), make_policy("b2", max_size="2"),
    ])
    remote = fake_remote()
    result = ConvergenceDriver(remote).converge(diff(address_profile, current, desired), order_id="o1")

    assert remote.calls == [
        ("create", ["DC.a1", "DC.a2"]),
        ("update", ["DC.b1"]),
        ("update", ["DC.b2"]),
        ("delete", ["DC.c"]),
    ]
    assert result.ok
    assert result.state is CycleState.FINISHED
    assert all(o.status is PhaseStatus.DONE for o in result.outcomes.values())


def test_delete_first_policy(fake_remote, scenario):
    _, _, plan = scenario
    remote = fake_remote()
    ConvergenceDriver(remote, OrderingPolicy.DELETE_FIRST).converge(plan)
    assert [op for op, _ in remote.calls] == ["delete", "create", "update"]


def test_ordering_policy_parse():
    assert OrderingPolicy.parse("delete-first") is OrderingPolicy.DELETE_FIRST
    assert OrderingPolicy.parse(OrderingPolicy.CREATE_FIRST) is OrderingPolicy.CREATE_FIRST
    with pytest.raises(ValueError):
        OrderingPolicy.parse("random")


def test_partial_failure_is_isolated(fake_remote, scenario):
    current, _, plan = scenario
    remote = fake_remote(fail={"create": {"DC.a"}})

    result = ConvergenceDriver(remote).converge(plan, order_id="o1", current=current)

    assert [op for op, _ in remote.calls] == ["create", "update", "delete"]
    assert not result.ok
    assert result.state is CycleState.FINISHED
    assert result.failed == ["DC.a"]
    assert sorted(result.converged) == ["DC.b", "DC.c"]
    assert result.outcomes[Phase.CREATE].status is PhaseStatus.FAILED
    assert result.outcomes[Phase.UPDATE].status is PhaseStatus.DONE
    err = result.errors[0]
    assert err.phase == "create" and err.identities == ("DC.a",)
    assert "rejected by portal" in err.message

    with pytest.raises(PartialConvergenceError) as ei:
        result.raise_for_errors()
    assert set(ei.value.converged) == {"DC.b", "DC.c"}

    confirmed = result.confirmed()
    assert list(confirmed) == ["DC.b"]
    assert confirmed["DC.b"].get("max_size") == "2Gb"


def test_one_failed_update_does_not_stop_the_others(fake_remote, address_profile, make_policy):
    current = Collection([make_policy(n, max_size="1") for n in ("u1", "u2", "u3")])
    desired = Collection([make_policy(n, max_size="2") for n in ("u1", "u2", "u3")])
    remote = fake_remote(fail={"update": {"DC.u2"}})

    result = ConvergenceDriver(remote).converge(diff(address_profile, current, desired))

    assert len(remote.calls) == 3
    assert result.converged == ["DC.u1", "DC.u3"]
    assert result.failed == ["DC.u2"]


def test_timeout_short_circuits_remaining_work(fake_remote, address_profile, make_policy):
    current = Collection([make_policy(n, max_size="1") for n in ("u1", "u2", "u3")] + [make_policy("gone")])
    desired = Collection([make_policy("new")] + [make_policy(n, max_size="2") for n in ("u1", "u2", "u3")])
    remote = fake_remote(interrupt={"update": {"DC.u2"}})

    with pytest.raises(ConvergenceInterrupted) as ei:
        ConvergenceDriver(remote).converge(diff(address_profile, current, desired), current=current)

    assert remote.calls == [("create", ["DC.new"]), ("update", ["DC.u1"]), ("update", ["DC.u2"])]
    result = ei.value.result
    assert isinstance(ei.value.cause, TimeoutError)
    assert result.state is CycleState.INTERRUPTED
    assert result.outcomes[Phase.UPDATE].status is PhaseStatus.INTERRUPTED
    assert result.outcomes[Phase.UPDATE].succeeded == ["DC.u1"]
    assert result.outcomes[Phase.DELETE].status is PhaseStatus.SKIPPED
    assert result.converged == ["DC.new", "DC.u1"]
    assert "DC.gone" in result.confirmed()


def test_empty_plan_makes_no_calls(fake_remote, address_profile, make_policy):
    coll = Collection([make_policy("a")])
    remote = fake_remote()
    result = ConvergenceDriver(remote).converge(diff(address_profile, coll, coll))
    assert remote.calls == []
    assert result.ok
    assert result.converged == []
