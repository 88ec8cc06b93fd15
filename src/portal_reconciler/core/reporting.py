"""
Reporting helpers (table or JSON) for plans and convergence results.

`result_rows` flattens a plan, or a result, into one row per identity;
`print_rows` renders a compact table for CLI usage or JSON for machines.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from .driver import ConvergenceResult, Phase, PhaseStatus
from .entities import Plan

log = logging.getLogger("prec.reporting")

_PHASE_STATUS = {
    PhaseStatus.DONE: "ok",
    PhaseStatus.FAILED: "failed",
    PhaseStatus.INTERRUPTED: "interrupted",
    PhaseStatus.SKIPPED: "skipped",
    PhaseStatus.PENDING: "pending",
}


def _fields_summary(values: Dict[str, Any], limit: int = 80) -> str:
    text = ", ".join(f"{k}={v}" for k, v in values.items())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _plan_rows(plan: Plan) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for c in plan.creates:
        rows.append({"identity": c.identity, "action": "create", "fields": _fields_summary(dict(c.entity.fields))})
    for u in plan.updates:
        changes = {k: f"{u.previous.get(k)!r}->{v!r}" for k, v in u.changed.items()}
        rows.append({"identity": u.identity, "action": "update", "fields": _fields_summary(changes)})
    for d in plan.deletes:
        rows.append({"identity": d.identity, "action": "delete", "fields": ""})
    return rows


def result_rows(subject: Union[Plan, ConvergenceResult]) -> List[Dict[str, Any]]:
    """One row per planned operation; results add status and error columns."""
    if isinstance(subject, Plan):
        return _plan_rows(subject)

    result = subject
    errors: Dict[str, str] = {}
    for err in result.errors:
        for ident in err.identities:
            errors[ident] = err.message
    converged = set(result.converged)

    rows = []
    for row in _plan_rows(result.plan):
        outcome = result.outcomes.get(Phase(row["action"]))
        ident = row["identity"]
        if ident in converged:
            status = "ok"
        elif ident in errors:
            status = "failed"
        elif outcome is not None:
            status = _PHASE_STATUS[outcome.status]
        else:
            status = "-"
        row["status"] = status
        row["error"] = errors.get(ident, "")
        rows.append(row)
    for v in result.violations:
        rows.append({
            "identity": getattr(v, "identity", None) or ", ".join(getattr(v, "identities", ())),
            "action": "validate",
            "fields": "",
            "status": "rejected",
            "error": str(v),
        })
    return rows


def print_rows(rows: List[Dict[str, Any]], fmt: str = "table", *, title: Optional[str] = None) -> None:
    """Render rows as a table (default) or JSON."""
    if fmt == "json":
        print(json.dumps(rows, indent=2, default=str))
        return

    if title:
        print(title)
    if not rows:
        print("(no changes)")
        return

    candidates = ["identity", "action", "status", "fields", "error"]
    cols = [c for c in candidates if any(str(r.get(c) or "") for r in rows) or c in ("identity", "action")]

    def _fmt(v: Any) -> str:
        s = "" if v is None else str(v)
        if len(s) > 160:
            s = s[:159] + "…"
        return s or "—"

    widths = {c: len(c) for c in cols}
    for r in rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c))))

    print("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |")
    print("| " + " | ".join("-" * widths[c] for c in cols) + " |")
    for r in rows:
        print("| " + " | ".join(_fmt(r.get(c)).ljust(widths[c]) for c in cols) + " |")
    log.debug("printed %d row(s)", len(rows))
