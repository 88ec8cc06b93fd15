import pytest

from portal_reconciler.core.entities import Collection
from portal_reconciler.core.state import StateError, StateStore


def test_save_then_load_keeps_order_and_values(tmp_path, address_profile, make_policy):
    store = StateStore(str(tmp_path / "state"))
    coll = Collection([make_policy("b", min_expiry_delay=3, max_expiry_delay=5), make_policy("a")], order_id="o1")

    path = store.save("address_policy", "o1", coll)

    assert path == tmp_path / "state" / "address_policy" / "o1.yml"
    assert not [p for p in path.parent.iterdir() if p.suffix == ".tmp"]
    loaded = store.load(address_profile, "o1")
    assert [e.identity for e in loaded] == ["DC.b", "DC.a"]
    assert loaded[0].get("max_expiry_delay") == 5


def test_missing_state_is_empty(tmp_path, address_profile):
    assert StateStore(str(tmp_path)).load(address_profile, "never-seen") == []


def test_malformed_state_file(tmp_path, address_profile):
    store = StateStore(str(tmp_path))
    path = store.path_for("address_policy", "o1")
    path.parent.mkdir(parents=True)
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(StateError):
        store.load(address_profile, "o1")


@pytest.mark.parametrize("order_id", ["", "..", "a/b"])
def test_order_id_must_be_a_file_name(tmp_path, order_id):
    with pytest.raises(ValueError):
        StateStore(str(tmp_path)).path_for("address_policy", order_id)
