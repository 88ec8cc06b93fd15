"""
Generic reconciler: one resource profile, any number of orders.

    reconciler = Reconciler(profile, remote_for, fetch_current)
    current, plan = reconciler.plan(order_id, desired)    # dry run
    result = reconciler.reconcile(order_id, desired)      # validate, diff, converge

Cycles for the same order id are serialized inside the process.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

from .diff import diff
from .driver import ConvergenceDriver, ConvergenceResult, CycleState, OrderingPolicy, RemoteCapability
from .entities import Collection, Entity, Plan
from .errors import PreflightError
from .profiles import ResourceProfile
from .validation import validate

# an entry lives only while some thread holds or waits on its lock
_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_LOCKS_GUARD = threading.Lock()


@contextmanager
def order_lock(order_id: str) -> Iterator[None]:
    """Process-wide lock for one order id."""
    with _LOCKS_GUARD:
        lock = _LOCKS.get(order_id)
        if lock is None:
            lock = threading.Lock()
            _LOCKS[order_id] = lock
    with lock:
        yield


class Reconciler:
    def __init__(
        self,
        profile: ResourceProfile,
        remote_for: Callable[[str], RemoteCapability],
        fetch_current: Callable[[str], Iterable[Entity]],
        *,
        policy: Union[OrderingPolicy, str, None] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.profile = profile
        self.remote_for = remote_for
        self.fetch_current = fetch_current
        self.policy = OrderingPolicy.parse(policy or profile.ordering)
        self.log = logger or logging.getLogger("prec.reconciler")

    def load_current(self, order_id: str) -> Collection:
        return Collection(self.fetch_current(order_id), order_id=order_id)

    def _preflight(self, order_id: str, desired: Iterable[Entity]) -> Tuple[Collection, Plan]:
        current = self.load_current(order_id)
        items: List[Entity] = list(desired.values()) if isinstance(desired, Collection) else list(desired)

        self.log.debug("cycle %s: %s -> %s", order_id, CycleState.START.value, CycleState.VALIDATING.value)
        violations = validate(self.profile, current, items)
        if violations:
            self.log.error("cycle %s aborted: %d pre-flight violation(s)", order_id, len(violations))
            for v in violations:
                self.log.error("  %s", v)
            result = ConvergenceResult(
                order_id=order_id,
                kind=self.profile.kind,
                plan=Plan(),
                policy=self.policy,
                state=CycleState.ABORTED,
                violations=list(violations),
                current=current,
            )
            raise PreflightError(violations, result=result)
        self.log.debug("cycle %s: %s", order_id, CycleState.VALIDATED.value)

        plan = diff(self.profile, current, Collection(items, order_id=order_id))
        counts = plan.counts()
        self.log.info(
            "%s %s: %d to create, %d to update, %d to delete",
            self.profile.kind, order_id, counts["create"], counts["update"], counts["delete"],
        )
        return current, plan

    def plan(self, order_id: str, desired: Iterable[Entity]) -> Tuple[Collection, Plan]:
        """Validate and diff without any remote effect."""
        return self._preflight(order_id, desired)

    def reconcile(self, order_id: str, desired: Iterable[Entity]) -> ConvergenceResult:
        """
        Converge the order towards `desired`.

        Raises PreflightError (zero remote calls) or ConvergenceInterrupted;
        remote failures are reported in the returned result.
        """
        with order_lock(order_id):
            current, plan = self._preflight(order_id, desired)
            driver = ConvergenceDriver(self.remote_for(order_id), self.policy, logger=self.log)
            result = driver.converge(plan, order_id=order_id, kind=self.profile.kind, current=current)
            if result.ok:
                self.log.info("%s %s converged (%d operation(s))",
                              self.profile.kind, order_id, len(result.converged))
            return result
