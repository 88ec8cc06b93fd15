"""
Pre-flight checks, run before any remote call.

validate(profile, current, desired) -> [violations]

- duplicate identity in desired (one ValidationError per duplicate set)
- duplicate value of a profile `unique` field in desired
- immutable field changed on an entity present in both collections
- paired fields: (S, S) or (v1, v2) with v1 <= v2, both != S
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .entities import Collection, Entity, find_duplicates
from .errors import (
    ImmutableFieldViolation,
    PairedFieldViolation,
    PreflightError,
    PreflightViolation,
    ValidationError,
)
from .profiles import PairSpec, ResourceProfile

log = logging.getLogger("prec.validation")


def _duplicate_identities(desired: Sequence[Entity]) -> List[ValidationError]:
    out: List[ValidationError] = []
    for identity, positions in find_duplicates(desired).items():
        out.append(ValidationError("identity", identity, [identity] * len(positions), positions))
    return out


def _duplicate_unique_values(profile: ResourceProfile, desired: Sequence[Entity]) -> List[ValidationError]:
    out: List[ValidationError] = []
    for fname in profile.unique:
        seen: Dict[Any, List[int]] = {}
        for pos, ent in enumerate(desired):
            value = profile.comparable(ent.fields).get(fname)
            if value is None:
                continue
            seen.setdefault(value, []).append(pos)
        for value, positions in seen.items():
            if len(positions) > 1:
                out.append(
                    ValidationError(
                        fname,
                        desired[positions[0]].get(fname),
                        [desired[p].identity for p in positions],
                        positions,
                    )
                )
    return out


def _immutable_changes(
    profile: ResourceProfile,
    current: Mapping[str, Entity],
    desired: Sequence[Entity],
) -> List[ImmutableFieldViolation]:
    out: List[ImmutableFieldViolation] = []
    if not profile.immutable:
        return out
    for ent in desired:
        existing = current.get(ent.identity)
        if existing is None:
            continue
        cur = profile.comparable(existing.fields)
        new = profile.comparable(ent.fields)
        for fname in profile.immutable:
            if cur.get(fname) != new.get(fname):
                out.append(ImmutableFieldViolation(ent.identity, fname, existing.get(fname), ent.get(fname)))
    return out


def check_pair(pair: PairSpec, ent: Entity) -> List[PairedFieldViolation]:
    low = ent.get(pair.low)
    high = ent.get(pair.high)
    low_unset = low == pair.sentinel
    high_unset = high == pair.sentinel
    if low_unset and high_unset:
        return []
    if low_unset or high_unset or low is None or high is None:
        reason = f"{pair.low} and {pair.high} must both be {pair.sentinel!r} or both be set"
        return [PairedFieldViolation(ent.identity, pair.low, pair.high, low, high, reason)]
    if low > high:
        reason = f"{pair.low} must not be greater than {pair.high}"
        return [PairedFieldViolation(ent.identity, pair.low, pair.high, low, high, reason)]
    return []


def validate(
    profile: ResourceProfile,
    current: Mapping[str, Entity],
    desired: Iterable[Entity],
) -> List[PreflightViolation]:
    """Return every violation found; an empty list means the cycle may proceed."""
    items = list(desired.values()) if isinstance(desired, Collection) else list(desired)
    violations: List[PreflightViolation] = []
    violations.extend(_duplicate_identities(items))
    violations.extend(_duplicate_unique_values(profile, items))
    violations.extend(_immutable_changes(profile, current, items))
    for ent in items:
        for pair in profile.pairs:
            violations.extend(check_pair(pair, ent))

    for v in violations:
        log.debug("Pre-flight violation (%s): %s", type(v).__name__, v)
    return violations


def ensure_valid(
    profile: ResourceProfile,
    current: Mapping[str, Entity],
    desired: Iterable[Entity],
) -> None:
    """Raise PreflightError when validate() reports anything."""
    violations = validate(profile, current, desired)
    if violations:
        raise PreflightError(violations)
