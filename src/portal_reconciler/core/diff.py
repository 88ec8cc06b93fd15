"""
Collection diff engine.

diff(profile, current, desired) -> Plan(creates, updates, deletes)

- identity only in desired            -> Create(full entity)
- identity in both, semantically equal -> nothing
- identity in both, fields differ      -> Update(changed fields + context)
- identity only in current            -> Delete

Creates/updates follow desired insertion order, deletes follow current
insertion order. Equality uses ResourceProfile.comparable, so set-like lists
and whitespace differences do not count as changes.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Set

from .entities import Collection, Create, Delete, Entity, Plan, Update
from .profiles import ResourceProfile


def diff(profile: ResourceProfile, current: Collection, desired: Collection) -> Plan:
    creates = []
    updates = []
    deletes = []

    for identity, wanted in desired.items():
        existing = current.get(identity)
        if existing is None:
            creates.append(Create(wanted))
            continue

        changed = profile.changed_fields(existing, wanted)
        if not changed:
            continue
        updates.append(
            Update(
                identity=identity,
                changed={k: wanted.get(k) for k in changed},
                previous={k: existing.get(k) for k in changed},
                context={k: v for k, v in wanted.fields.items() if k not in changed},
            )
        )

    for identity, existing in current.items():
        if identity not in desired:
            deletes.append(Delete(identity=identity, entity=existing))

    return Plan(creates=tuple(creates), updates=tuple(updates), deletes=tuple(deletes))


def apply_plan(
    current: Collection,
    plan: Plan,
    *,
    only: Optional[Iterable[str]] = None,
) -> Collection:
    """
    Apply a plan to `current` without any remote effect.

    `only` restricts the operations taken into account to those identities
    (e.g. the ones a partially failed cycle confirmed). Existing entities keep
    their position; created ones are appended in plan order.
    """
    allowed: Optional[Set[str]] = set(only) if only is not None else None

    def take(identity: str) -> bool:
        return allowed is None or identity in allowed

    updates: Dict[str, Update] = {u.identity: u for u in plan.updates if take(u.identity)}
    removed = {d.identity for d in plan.deletes if take(d.identity)}

    out = []
    for identity, ent in current.items():
        if identity in removed:
            continue
        upd = updates.get(identity)
        if upd is not None:
            fields = dict(ent.fields)
            fields.update(upd.changed)
            ent = Entity(identity=identity, fields=fields)
        out.append(ent)
    out.extend(c.entity for c in plan.creates if take(c.identity))
    return Collection(out, order_id=current.order_id)
