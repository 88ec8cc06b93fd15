"""
Entities, collections and operations.

Everything here is read-only once built: a Collection owns its identity index,
operations reference entities but never mutate them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .errors import ValidationError


def _frozen(fields: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(fields))


@dataclass(frozen=True)
class Entity:
    """One sub-resource of an order (address policy, technical user, ACL...)."""
    identity: str
    fields: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _frozen(self.fields))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.fields)


def find_duplicates(entities: Iterable[Entity]) -> Dict[str, List[int]]:
    """Return {identity: [positions]} for identities seen more than once."""
    seen: Dict[str, List[int]] = {}
    for pos, ent in enumerate(entities):
        seen.setdefault(ent.identity, []).append(pos)
    return {k: v for k, v in seen.items() if len(v) > 1}


class Collection(Mapping[str, Entity]):
    """
    Identity-keyed, insertion-ordered, read-only set of entities of one order.

    Raises ValidationError on the first repeated identity; use the validator
    beforehand to get every duplicate set reported at once.
    """

    def __init__(self, entities: Iterable[Entity] = (), *, order_id: str = "") -> None:
        items = list(entities)
        dups = find_duplicates(items)
        if dups:
            ident, positions = next(iter(dups.items()))
            raise ValidationError("identity", ident, [ident] * len(positions), positions)
        self._index: Mapping[str, Entity] = MappingProxyType({e.identity: e for e in items})
        self.order_id = order_id

    def __getitem__(self, identity: str) -> Entity:
        return self._index[identity]

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"Collection(order_id={self.order_id!r}, identities={list(self._index)!r})"

    def entities(self) -> List[Entity]:
        return list(self._index.values())


# ---------- Operations ----------

@dataclass(frozen=True)
class Create:
    entity: Entity

    @property
    def identity(self) -> str:
        return self.entity.identity


@dataclass(frozen=True)
class Update:
    """
    Changed fields of a matched entity.

    changed:  new values of the fields that differ
    previous: current values of those same fields
    context:  unchanged sibling fields, so a full update payload can be built
    """
    identity: str
    changed: Mapping[str, Any]
    previous: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "changed", _frozen(self.changed))
        object.__setattr__(self, "previous", _frozen(self.previous))
        object.__setattr__(self, "context", _frozen(self.context))

    def desired_fields(self) -> Dict[str, Any]:
        out = dict(self.context)
        out.update(self.changed)
        return out


@dataclass(frozen=True)
class Delete:
    identity: str
    entity: Optional[Entity] = None


@dataclass(frozen=True)
class Plan:
    creates: Tuple[Create, ...] = ()
    updates: Tuple[Update, ...] = ()
    deletes: Tuple[Delete, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)

    def identities(self) -> Dict[str, Tuple[str, ...]]:
        return {
            "create": tuple(op.identity for op in self.creates),
            "update": tuple(op.identity for op in self.updates),
            "delete": tuple(op.identity for op in self.deletes),
        }

    def counts(self) -> Dict[str, int]:
        return {k: len(v) for k, v in self.identities().items()}
