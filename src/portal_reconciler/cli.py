"""
Command-line interface for portal-reconciler.

Usage (examples):
  - Plan against the last confirmed state (no HTTP):
      prec plan --kind address_policy --order-id 1234 --desired ./policies.yml

  - Plan against the live order:
      prec plan --kind technical_user --order-id 1234 --desired ./tuz.csv --current-from remote \
        --base-url https://portal.example --token TOKEN --project proj-1

  - Converge:
      prec apply --kind kafka_acl --order-id 1234 --desired ./acls.xlsx \
        --base-url https://portal.example --token TOKEN --project proj-1

Exit codes: 0 converged, 2 partial/remote failure/interrupted, 3 rejected
(pre-flight violation, configuration or profile error).
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Callable, Dict, Iterable, Optional

from .core.config import AppConfig, ConfigError, load_config
from .core.driver import OrderingPolicy
from .core.entities import Entity
from .core.errors import ConvergenceInterrupted, PreflightError, PreflightViolation
from .core.inputs import load_desired
from .core.logging_setup import build_logger
from .core.order_actions import OrderActions, fetch_order_collection
from .core.portal_client import OrderFailed, PortalClient, PortalError, PortalTimeout
from .core.profiles import ProfileError, ProfileLoader, ResourceProfile
from .core.reconciler import Reconciler
from .core.reporting import print_rows, result_rows
from .core.state import StateError, StateStore

EXIT_OK = 0
EXIT_PARTIAL = 2
EXIT_REJECTED = 3


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="prec", description="Reconcile order sub-resources on the portal")
    sub = p.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--kind", required=True, help="Resource profile name (without .yml)")
    common.add_argument("--order-id", required=True, help="Portal order id")
    common.add_argument("--desired", required=True, help="Desired collection (.yml, .csv or .xlsx)")
    common.add_argument("--sheet", default=None, help="XLSX sheet name (default: first sheet)")
    common.add_argument("--current-from", choices=["state", "remote"], default=None,
                        help="Read the current collection from the state store or the live order")
    common.add_argument("--ordering", choices=[p.value for p in OrderingPolicy], default=None,
                        help="Override the profile's phase ordering")
    common.add_argument("--state-dir", default=None, help="State store directory")
    common.add_argument("--search-path", action="append", default=None,
                        help="Extra profile directory (repeatable)")
    common.add_argument("--config", default=None, help="YAML configuration file")
    common.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    # Portal / HTTP
    common.add_argument("--base-url", default=None, help="Portal base URL")
    common.add_argument("--token", default=None, help="Portal bearer token")
    common.add_argument("--project", default=None, help="Portal project name")
    common.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    common.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    common.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network)")
    common.add_argument("--poll-interval-sec", type=float, default=None, help="Order polling interval")
    common.add_argument("--wait-timeout-sec", type=float, default=None, help="Max wait for one order action")

    # Logging
    common.add_argument("--logs-dir", default=None, help="Logs base directory")
    common.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    common.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")

    sub.add_parser("plan", parents=[common], help="Validate and show the operations, no changes")
    sub.add_parser("apply", parents=[common], help="Validate, diff and converge the order")
    return p


def _overrides(args: argparse.Namespace, *, dry_run: bool) -> Dict[str, Any]:
    return {
        "app": {"dry_run": dry_run, "ordering": args.ordering},
        "portal": {
            "base_url": args.base_url,
            "token": args.token,
            "project": args.project,
            "verify_tls": args.verify_tls,
            "timeout_sec": args.timeout_sec,
            "retries": args.retries,
            "poll_interval_sec": args.poll_interval_sec,
            "wait_timeout_sec": args.wait_timeout_sec,
        },
        "profiles": {"search_paths": args.search_path},
        "logging": {
            "base_dir": args.logs_dir,
            "console_level": args.console_level,
            "file_level": args.file_level,
        },
        "state": {"dir": args.state_dir},
    }


def _make_client(cfg: AppConfig, logger: logging.LoggerAdapter) -> PortalClient:
    return PortalClient(
        base_url=cfg.portal.base_url,
        token=cfg.portal.token,
        project=cfg.portal.project,
        verify_tls=cfg.portal.verify_tls,
        timeout_sec=cfg.portal.timeout_sec,
        retries=cfg.portal.retries,
        poll_interval_sec=cfg.portal.poll_interval_sec,
        wait_timeout_sec=cfg.portal.wait_timeout_sec,
        logger=logger,
    )


def _current_source(
    current_from: str,
    profile: ResourceProfile,
    store: StateStore,
    client: Optional[PortalClient],
) -> Callable[[str], Iterable[Entity]]:
    if current_from == "remote":
        assert client is not None
        return lambda order_id: fetch_order_collection(client, profile, order_id)
    return lambda order_id: store.load(profile, order_id)


def _run(args: argparse.Namespace) -> int:
    current_from = args.current_from or "state"
    is_apply = args.cmd == "apply"
    files = (args.config,) if args.config else None
    cfg = load_config(_overrides(args, dry_run=not is_apply and current_from == "state"), files=files)

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"kind": args.kind, "order": args.order_id},
    )
    logger.info("Starting prec %s (current from %s)", args.cmd, current_from)

    profile = ProfileLoader(search_paths=cfg.profiles.search_paths).load(args.kind)
    desired = load_desired(args.desired, profile, sheet=args.sheet)
    logger.info("Loaded %d desired %s entit(y/ies) from %s", len(desired), profile.kind, args.desired)

    store = StateStore(cfg.state.dir)
    client = _make_client(cfg, logger) if (is_apply or current_from == "remote") else None

    def remote_for(order_id: str) -> OrderActions:
        assert client is not None
        return OrderActions(client, profile, order_id, logger=logger)

    reconciler = Reconciler(
        profile,
        remote_for,
        _current_source(current_from, profile, store, client),
        policy=cfg.app.ordering,
        logger=logger,
    )

    title = f"{profile.kind} order={args.order_id} ({reconciler.policy.value})"
    try:
        if not is_apply:
            _, plan = reconciler.plan(args.order_id, desired)
            print_rows(result_rows(plan), args.format, title=title)
            return EXIT_OK

        result = reconciler.reconcile(args.order_id, desired)
    except PreflightError as exc:
        if exc.result is not None:
            print_rows(result_rows(exc.result), args.format, title=title)
        logger.error("%s", exc)
        return EXIT_REJECTED
    except ConvergenceInterrupted as exc:
        path = store.save(profile.kind, args.order_id, exc.result.confirmed())
        print_rows(result_rows(exc.result), args.format, title=title)
        logger.error("%s; confirmed state saved to %s", exc, path)
        return EXIT_PARTIAL

    path = store.save(profile.kind, args.order_id, result.confirmed())
    print_rows(result_rows(result), args.format, title=title)
    if result.errors:
        logger.warning("Partial convergence; confirmed state saved to %s", path)
        return EXIT_PARTIAL
    logger.info("Converged; state saved to %s", path)
    return EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        return _run(args)
    except (ConfigError, ProfileError, StateError, PreflightViolation, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_REJECTED
    except (PortalError, PortalTimeout, OrderFailed) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_PARTIAL
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return EXIT_PARTIAL


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
