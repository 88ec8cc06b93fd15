from portal_reconciler.core.diff import apply_plan, diff
from portal_reconciler.core.entities import Collection
from portal_reconciler.core.profiles import ResourceProfile


def _snapshot(collection):
    return {ident: dict(ent.fields) for ident, ent in collection.items()}


def test_create_update_delete_and_ordering(address_profile, make_policy):
    current = Collection([
        make_policy("c"),
        make_policy("a"),
        make_policy("b", max_size="1Gb"),
        make_policy("z"),
    ], order_id="o1")
    desired = Collection([
        make_policy("y"),
        make_policy("b", max_size="2Gb"),
        make_policy("x"),
        make_policy("a", slow_consumer_threshold=20),
    ], order_id="o1")

    plan = diff(address_profile, current, desired)

    assert [c.identity for c in plan.creates] == ["DC.y", "DC.x"]
    assert [u.identity for u in plan.updates] == ["DC.b", "DC.a"]
    assert [d.identity for d in plan.deletes] == ["DC.c", "DC.z"]

    upd_b = plan.updates[0]
    assert dict(upd_b.changed) == {"max_size": "2Gb"}
    assert dict(upd_b.previous) == {"max_size": "1Gb"}
    assert upd_b.context["address_full_policy"] == "PAGE"
    assert "max_size" not in upd_b.context

    # deletes carry the last known entity
    assert plan.deletes[0].entity.get("address_name") == "c"


def test_diff_of_same_collection_is_empty(address_profile, make_policy):
    coll = Collection([make_policy("a"), make_policy("b", prefix="DC.service.")])
    assert diff(address_profile, coll, coll).is_empty


def test_whitespace_only_difference_is_not_a_change(address_profile, make_policy):
    current = Collection([make_policy("a", slow_consumer_policy="NOTIFY")])
    desired = Collection([make_policy("a", slow_consumer_policy="  NOTIFY ")])
    assert diff(address_profile, current, desired).is_empty


def test_set_like_lists_and_ignored_fields():
    profile = ResourceProfile(
        name="groups",
        cfg={
            "identity": {"format": "${name}"},
            "fields": {
                "name": {"type": "str"},
                "members": {"type": "list", "as_set": True},
                "updated_at": {"type": "str", "default": ""},
            },
            "diff": {"ignore_fields": ["updated_at"]},
        },
    )
    current = Collection([profile.build_entity({"name": "g", "members": "b,a,a", "updated_at": "yesterday"})])
    desired = Collection([profile.build_entity({"name": "g", "members": ["a", "b"], "updated_at": "today"})])
    assert diff(profile, current, desired).is_empty

    desired2 = Collection([profile.build_entity({"name": "g", "members": "a,b,c"})])
    plan = diff(profile, current, desired2)
    assert [u.identity for u in plan.updates] == ["g"]
    assert list(plan.updates[0].changed) == ["members"]


def test_plan_identities_are_disjoint_and_complete(address_profile, make_policy):
    current = Collection([make_policy("keep"), make_policy("change"), make_policy("drop")])
    desired = Collection([make_policy("keep"), make_policy("change", max_size="5Gb"), make_policy("new")])

    ids = diff(address_profile, current, desired).identities()

    assert set(ids["create"]) == {"DC.new"}
    assert set(ids["update"]) == {"DC.change"}
    assert set(ids["delete"]) == {"DC.drop"}
    every = ids["create"] + ids["update"] + ids["delete"]
    assert len(every) == len(set(every))
    assert "DC.keep" not in every


def test_apply_plan_reproduces_desired(address_profile, make_policy):
    current = Collection([make_policy("a"), make_policy("b"), make_policy("c")], order_id="o1")
    desired = Collection([
        make_policy("b", min_expiry_delay=3, max_expiry_delay=5),
        make_policy("d"),
        make_policy("a"),
    ], order_id="o1")

    result = apply_plan(current, diff(address_profile, current, desired))

    assert _snapshot(result) == _snapshot(desired)
    assert result.order_id == "o1"


def test_apply_plan_only_subset(address_profile, make_policy):
    current = Collection([make_policy("b", max_size="1Gb"), make_policy("c")])
    desired = Collection([make_policy("a"), make_policy("b", max_size="2Gb")])
    plan = diff(address_profile, current, desired)

    # the create of A failed, the rest converged
    partial = apply_plan(current, plan, only=["DC.b", "DC.c"])

    assert list(partial) == ["DC.b"]
    assert partial["DC.b"].get("max_size") == "2Gb"
    rerun = diff(address_profile, partial, desired)
    assert [c.identity for c in rerun.creates] == ["DC.a"]
    assert not rerun.updates and not rerun.deletes
