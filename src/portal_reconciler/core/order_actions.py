"""
Profile-driven remote capability bound to one portal order.

Profile section used here:

remote:
  list_key: addresses_and_policies_list    # config list of the parent item
  mapping: {...}                           # see ResourceProfile.map_remote
  create: {action, list_key, item}         # one batch call
  update: {action, attrs | list_key+item}  # one call per entity
  delete: {action, list_key, item}         # one batch call

Templates use ${field} placeholders over the entity fields, the pair unset
flags (e.g. ${no_expiry_delay}) and ${identity}.

Paired fields get a follow-up block on update when either member changed:
  update:
    pairs:
      expiry_delay:
        change_flag: change_expiry_delay
        block_key: expiry_delay
        block: {no_expiry_delay: "${no_expiry_delay}", new_min_expiry_delay: "${min_expiry_delay}", ...}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .entities import Delete, Entity, Update
from .portal_client import PortalClient
from .profiles import ProfileError, ResourceProfile, render


def _context(profile: ResourceProfile, identity: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    ctx: Dict[str, Any] = dict(fields)
    ctx.update(profile.unset_flags(fields))
    ctx["identity"] = identity
    return ctx


class OrderActions:
    """RemoteCapability issuing the profile's order actions through a PortalClient."""

    def __init__(
        self,
        client: PortalClient,
        profile: ResourceProfile,
        order_id: str,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.profile = profile
        self.order_id = order_id
        self.log = logger or logging.getLogger("prec.actions")

    # ------------- Payloads -------------

    def _section(self, op: str) -> Dict[str, Any]:
        section = self.profile.remote.get(op)
        if not isinstance(section, dict) or not section.get("action"):
            raise ProfileError(f"Profile '{self.profile.name}' declares no remote {op} action")
        return section

    def _items(self, section: Mapping[str, Any], contexts: Sequence[Dict[str, Any]]) -> List[Any]:
        template = section.get("item")
        if template is None:
            return [{k: v for k, v in ctx.items() if k in self.profile.fields} for ctx in contexts]
        return [render(template, ctx) for ctx in contexts]

    def create_attrs(self, entities: Sequence[Entity]) -> Dict[str, Any]:
        section = self._section("create")
        contexts = [_context(self.profile, e.identity, e.fields) for e in entities]
        return {section.get("list_key", "items"): self._items(section, contexts)}

    def delete_attrs(self, deletes: Sequence[Delete]) -> Dict[str, Any]:
        section = self._section("delete")
        contexts = []
        for d in deletes:
            fields = d.entity.fields if d.entity is not None else {}
            contexts.append(_context(self.profile, d.identity, fields))
        return {section.get("list_key", "items"): self._items(section, contexts)}

    def update_attrs(self, update: Update) -> Dict[str, Any]:
        section = self._section("update")
        desired = update.desired_fields()
        ctx = _context(self.profile, update.identity, desired)
        pair_cfg = section.get("pairs") or {}

        blocks: Dict[str, Any] = {}
        for pair in self.profile.pairs:
            cfg = pair_cfg.get(pair.name)
            if not cfg:
                continue
            flag = cfg.get("change_flag")
            if not pair.touched_by(update.changed):
                if flag:
                    ctx[flag] = False
                continue
            if flag:
                ctx[flag] = True

            block_ctx = dict(ctx)
            if pair.is_unset(desired) and pair.unset_fallback is not None:
                block_ctx[pair.low], block_ctx[pair.high] = pair.unset_fallback
            if cfg.get("block_key") and cfg.get("block") is not None:
                blocks[cfg["block_key"]] = render(cfg["block"], block_ctx)

            # the base payload keeps the values the order currently has
            ctx[pair.low] = update.previous.get(pair.low, desired.get(pair.low))
            ctx[pair.high] = update.previous.get(pair.high, desired.get(pair.high))

        if section.get("list_key"):
            attrs = {section["list_key"]: self._items(section, [ctx])}
        else:
            attrs = dict(render(section.get("attrs") or {}, ctx))
        attrs.update(blocks)
        return attrs

    # ------------- RemoteCapability -------------

    def create_batch(self, entities: Sequence[Entity]) -> Any:
        section = self._section("create")
        attrs = self.create_attrs(entities)
        self.log.debug("create payload for %d entit(y/ies): %s", len(entities), attrs)
        return self.client.run_action(self.order_id, section["action"], attrs)

    def update_one(self, update: Update) -> Any:
        section = self._section("update")
        attrs = self.update_attrs(update)
        self.log.debug("update payload for %s: %s", update.identity, attrs)
        return self.client.run_action(self.order_id, section["action"], attrs)

    def delete_batch(self, deletes: Sequence[Delete]) -> Any:
        section = self._section("delete")
        attrs = self.delete_attrs(deletes)
        self.log.debug("delete payload for %d entit(y/ies): %s", len(deletes), attrs)
        return self.client.run_action(self.order_id, section["action"], attrs)


def fetch_order_collection(client: PortalClient, profile: ResourceProfile, order_id: str) -> List[Entity]:
    """Read the parent item's config list of the order and map it to entities."""
    list_key = profile.remote.get("list_key")
    if not list_key:
        raise ProfileError(f"Profile '{profile.name}' declares no remote.list_key")
    item = client.parent_item(client.get_order(order_id))
    config = (item.get("data") or {}).get("config") or {}
    return [profile.map_remote(raw) for raw in config.get(list_key) or []]
