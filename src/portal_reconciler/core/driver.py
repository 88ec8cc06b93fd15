"""
Convergence driver: issues a Plan through a RemoteCapability.

- Phase order comes from an explicit OrderingPolicy.
- Creates and deletes are one batch call each, updates one call per entity.
- A failing phase never stops the others; errors are accumulated.
- TimeoutError / KeyboardInterrupt from a remote call stops the cycle at once
  and is raised as ConvergenceInterrupted with the partial result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .diff import apply_plan
from .entities import Collection, Delete, Entity, Plan, Update
from .errors import (
    ConvergenceInterrupted,
    PartialConvergenceError,
    PreflightViolation,
    RemoteCallError,
)

INTERRUPTS = (TimeoutError, KeyboardInterrupt)


class Phase(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    SKIPPED = "skipped"


class CycleState(str, Enum):
    START = "start"
    VALIDATING = "validating"
    VALIDATED = "validated"
    ABORTED = "aborted"
    APPLYING = "applying"
    FINISHED = "finished"
    INTERRUPTED = "interrupted"


class OrderingPolicy(str, Enum):
    """Which phase runs first; destructive work last unless told otherwise."""
    CREATE_FIRST = "create_first"
    DELETE_FIRST = "delete_first"

    @property
    def phases(self) -> Tuple[Phase, ...]:
        if self is OrderingPolicy.DELETE_FIRST:
            return (Phase.DELETE, Phase.CREATE, Phase.UPDATE)
        return (Phase.CREATE, Phase.UPDATE, Phase.DELETE)

    @classmethod
    def parse(cls, value: Any) -> "OrderingPolicy":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_")
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"Unknown ordering policy {value!r}; expected one of: "
                + ", ".join(p.value for p in cls)
            ) from None


class RemoteCapability(Protocol):
    """What the driver needs from the portal for one order."""

    def create_batch(self, entities: Sequence[Entity]) -> Any: ...

    def update_one(self, update: Update) -> Any: ...

    def delete_batch(self, deletes: Sequence[Delete]) -> Any: ...


@dataclass
class PhaseOutcome:
    phase: Phase
    identities: Tuple[str, ...] = ()
    status: PhaseStatus = PhaseStatus.PENDING
    succeeded: List[str] = field(default_factory=list)
    errors: List[RemoteCallError] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        out: List[str] = []
        for err in self.errors:
            out.extend(err.identities)
        return out


@dataclass
class ConvergenceResult:
    """Consolidated outcome of one convergence cycle."""
    order_id: str
    kind: str
    plan: Plan
    policy: OrderingPolicy = OrderingPolicy.CREATE_FIRST
    state: CycleState = CycleState.START
    outcomes: Dict[Phase, PhaseOutcome] = field(default_factory=dict)
    violations: List[PreflightViolation] = field(default_factory=list)
    current: Optional[Collection] = None

    @property
    def errors(self) -> List[RemoteCallError]:
        out: List[RemoteCallError] = []
        for phase in self.policy.phases:
            if phase in self.outcomes:
                out.extend(self.outcomes[phase].errors)
        return out

    @property
    def converged(self) -> List[str]:
        out: List[str] = []
        for phase in self.policy.phases:
            if phase in self.outcomes:
                out.extend(self.outcomes[phase].succeeded)
        return out

    @property
    def failed(self) -> List[str]:
        out: List[str] = []
        for err in self.errors:
            out.extend(err.identities)
        return out

    @property
    def ok(self) -> bool:
        return self.state is CycleState.FINISHED and not self.errors

    def confirmed(self) -> Collection:
        """The collection that is known to exist remotely after this cycle."""
        base = self.current if self.current is not None else Collection(order_id=self.order_id)
        if self.state is CycleState.ABORTED:
            return base
        return apply_plan(base, self.plan, only=self.converged)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialConvergenceError(self.errors, self.converged)


class ConvergenceDriver:
    def __init__(
        self,
        remote: RemoteCapability,
        policy: OrderingPolicy = OrderingPolicy.CREATE_FIRST,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.remote = remote
        self.policy = OrderingPolicy.parse(policy)
        self.log = logger or logging.getLogger("prec.driver")

    def converge(
        self,
        plan: Plan,
        *,
        order_id: str = "",
        kind: str = "",
        current: Optional[Collection] = None,
    ) -> ConvergenceResult:
        ids = plan.identities()
        result = ConvergenceResult(
            order_id=order_id,
            kind=kind,
            plan=plan,
            policy=self.policy,
            state=CycleState.APPLYING,
            outcomes={p: PhaseOutcome(phase=p, identities=ids[p.value]) for p in Phase},
            current=current,
        )
        phases = self.policy.phases
        for pos, phase in enumerate(phases):
            outcome = result.outcomes[phase]
            if not outcome.identities:
                outcome.status = PhaseStatus.DONE
                continue
            self.log.info("%s phase: %d entit(y/ies)", phase.value, len(outcome.identities))
            try:
                self._run_phase(phase, plan, outcome)
            except INTERRUPTS as exc:
                outcome.status = PhaseStatus.INTERRUPTED
                for later in phases[pos + 1:]:
                    result.outcomes[later].status = PhaseStatus.SKIPPED
                result.state = CycleState.INTERRUPTED
                self.log.error(
                    "%s phase interrupted after %d/%d: %s",
                    phase.value, len(outcome.succeeded), len(outcome.identities), exc,
                )
                raise ConvergenceInterrupted(result, exc) from exc

        result.state = CycleState.FINISHED
        if result.errors:
            self.log.warning(
                "Partial convergence: %d failed call(s), converged=%s",
                len(result.errors), result.converged,
            )
        return result

    # ------------- Phases -------------

    def _run_phase(self, phase: Phase, plan: Plan, outcome: PhaseOutcome) -> None:
        if phase is Phase.CREATE:
            self._batch(outcome, lambda: self.remote.create_batch([c.entity for c in plan.creates]))
        elif phase is Phase.DELETE:
            self._batch(outcome, lambda: self.remote.delete_batch(list(plan.deletes)))
        else:
            for upd in plan.updates:
                try:
                    self.remote.update_one(upd)
                except INTERRUPTS:
                    raise
                except Exception as exc:
                    self.log.error("update %s failed: %s", upd.identity, exc)
                    outcome.errors.append(RemoteCallError(phase.value, [upd.identity], str(exc)))
                else:
                    self.log.debug("update %s done (changed=%s)", upd.identity, sorted(upd.changed))
                    outcome.succeeded.append(upd.identity)
            outcome.status = PhaseStatus.FAILED if outcome.errors else PhaseStatus.DONE

    def _batch(self, outcome: PhaseOutcome, call: Any) -> None:
        try:
            call()
        except INTERRUPTS:
            raise
        except Exception as exc:
            self.log.error("%s batch failed: %s", outcome.phase.value, exc)
            outcome.errors.append(RemoteCallError(outcome.phase.value, outcome.identities, str(exc)))
            outcome.status = PhaseStatus.FAILED
        else:
            outcome.succeeded.extend(outcome.identities)
            outcome.status = PhaseStatus.DONE
