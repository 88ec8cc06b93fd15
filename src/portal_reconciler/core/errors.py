"""
Error taxonomy for a convergence cycle.

Pre-flight violations (nothing sent to the portal):
  - ValidationError           duplicate identity / duplicate unique field
  - ImmutableFieldViolation   immutable field changed on a matched entity
  - PairedFieldViolation      paired fields half-set or out of order

Apply-time:
  - RemoteCallError           one phase call failed (non-fatal to other phases)
  - PartialConvergenceError   aggregate of RemoteCallErrors
  - ConvergenceInterrupted    timeout/cancellation, carries the partial result
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .driver import ConvergenceResult


class ReconcileError(Exception):
    """Base error for everything raised by the reconciler."""


# ---------- Pre-flight ----------

class PreflightViolation(ReconcileError):
    """A desired collection that must not be applied."""


class ValidationError(PreflightViolation):
    """Two or more desired entities share a value that must be unique."""

    def __init__(
        self,
        field: str,
        value: Any,
        identities: Sequence[str],
        positions: Sequence[int] = (),
    ) -> None:
        self.field = field
        self.value = value
        self.identities: Tuple[str, ...] = tuple(identities)
        self.positions: Tuple[int, ...] = tuple(positions)
        refs = [
            f"#{pos} {ident}" for pos, ident in zip(self.positions, self.identities)
        ] or list(self.identities)
        super().__init__(
            f"{field} must be unique: {value!r} used by {len(self.identities)} entities "
            f"({', '.join(refs)})"
        )


class ImmutableFieldViolation(PreflightViolation):
    """An immutable field differs between current and desired."""

    def __init__(self, identity: str, field: str, old: Any, new: Any) -> None:
        self.identity = identity
        self.field = field
        self.old = old
        self.new = new
        super().__init__(
            f"{identity}: '{field}' is immutable (current={old!r}, desired={new!r})"
        )


class PairedFieldViolation(PreflightViolation):
    """Paired fields are not jointly set/unset, or are out of order."""

    def __init__(
        self,
        identity: str,
        low: str,
        high: str,
        low_value: Any,
        high_value: Any,
        reason: str,
    ) -> None:
        self.identity = identity
        self.low = low
        self.high = high
        self.low_value = low_value
        self.high_value = high_value
        self.reason = reason
        super().__init__(
            f"{identity}: {reason} ({low}={low_value!r}, {high}={high_value!r})"
        )


class PreflightError(ReconcileError):
    """Raised when validation produced at least one violation."""

    def __init__(
        self,
        violations: Sequence[PreflightViolation],
        result: Optional["ConvergenceResult"] = None,
    ) -> None:
        self.violations: List[PreflightViolation] = list(violations)
        self.result = result
        lines = "; ".join(str(v) for v in self.violations)
        super().__init__(f"{len(self.violations)} pre-flight violation(s): {lines}")


# ---------- Apply-time ----------

class RemoteCallError(ReconcileError):
    """One remote call failed; the other phases are still attempted."""

    def __init__(self, phase: str, identities: Sequence[str], message: str) -> None:
        self.phase = phase
        self.identities: Tuple[str, ...] = tuple(identities)
        self.message = message
        super().__init__(f"{phase} failed for {', '.join(self.identities)}: {message}")


class PartialConvergenceError(ReconcileError):
    """Some operations of the cycle failed while others converged."""

    def __init__(self, errors: Sequence[RemoteCallError], converged: Sequence[str]) -> None:
        self.errors: List[RemoteCallError] = list(errors)
        self.converged: Tuple[str, ...] = tuple(converged)
        super().__init__(
            f"{len(self.errors)} remote call(s) failed, "
            f"{len(self.converged)} entit(y/ies) converged"
        )


class ConvergenceInterrupted(ReconcileError):
    """A remote call timed out or was cancelled; remaining work was skipped."""

    def __init__(self, result: "ConvergenceResult", cause: BaseException) -> None:
        self.result = result
        self.cause = cause
        super().__init__(f"convergence interrupted: {cause}")
