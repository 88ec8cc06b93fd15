import pytest

from portal_reconciler.core.entities import Collection
from portal_reconciler.core.errors import (
    ImmutableFieldViolation,
    PairedFieldViolation,
    PreflightError,
    ValidationError,
)
from portal_reconciler.core.profiles import ProfileLoader
from portal_reconciler.core.validation import ensure_valid, validate


@pytest.mark.parametrize(
    "low, high, accepted",
    [
        (-1, -1, True),
        (3, 5, True),
        (5, 5, True),
        (-1, 5, False),
        (3, -1, False),
        (10, 5, False),
    ],
)
def test_paired_expiry_delay_table(address_profile, make_policy, low, high, accepted):
    desired = [make_policy("a", min_expiry_delay=low, max_expiry_delay=high)]
    violations = validate(address_profile, Collection(), desired)
    if accepted:
        assert violations == []
    else:
        assert len(violations) == 1
        v = violations[0]
        assert isinstance(v, PairedFieldViolation)
        assert (v.low, v.high) == ("min_expiry_delay", "max_expiry_delay")
        assert (v.low_value, v.high_value) == (low, high)
        assert v.identity == "DC.a"


def test_min_greater_than_max_reason(address_profile, make_policy):
    [v] = validate(address_profile, Collection(), [make_policy("a", min_expiry_delay=10, max_expiry_delay=5)])
    assert "must not be greater than" in v.reason


def test_duplicate_identity_single_error(address_profile, make_policy):
    desired = [make_policy("foo"), make_policy("bar"), make_policy("foo", max_size="1Gb")]
    violations = validate(address_profile, Collection(), desired)

    assert len(violations) == 1
    err = violations[0]
    assert isinstance(err, ValidationError)
    assert err.identities == ("DC.foo", "DC.foo")
    assert err.positions == (0, 2)
    assert "#0 DC.foo" in str(err) and "#2 DC.foo" in str(err)


def test_immutable_field_change_is_reported(address_profile, make_policy):
    current = Collection([make_policy("x", address_full_policy="FAIL")])
    desired = [make_policy("x", address_full_policy="BLOCK"), make_policy("y", address_full_policy="DROP")]

    violations = validate(address_profile, current, desired)

    assert len(violations) == 1
    v = violations[0]
    assert isinstance(v, ImmutableFieldViolation)
    assert (v.identity, v.field, v.old, v.new) == ("DC.x", "address_full_policy", "FAIL", "BLOCK")


def test_unique_field_duplicates():
    profile = ProfileLoader().load("technical_user")
    desired = [
        profile.build_entity({"user_name": "u1", "user_owner_cert": "CN=app"}),
        profile.build_entity({"user_name": "u2", "user_owner_cert": " CN=app"}),
        profile.build_entity({"user_name": "u3", "user_owner_cert": "CN=other"}),
    ]
    violations = validate(profile, Collection(), desired)

    assert len(violations) == 1
    assert violations[0].field == "user_owner_cert"
    assert violations[0].identities == ("u1", "u2")


def test_ensure_valid_raises_with_every_violation(address_profile, make_policy):
    desired = [
        make_policy("a", min_expiry_delay=-1, max_expiry_delay=5),
        make_policy("b", min_expiry_delay=9, max_expiry_delay=1),
    ]
    with pytest.raises(PreflightError) as ei:
        ensure_valid(address_profile, Collection(), desired)
    assert len(ei.value.violations) == 2
    assert ei.value.result is None

    ensure_valid(address_profile, Collection(), [make_policy("ok")])
