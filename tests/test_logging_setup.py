import logging
from datetime import datetime, timezone

from portal_reconciler.core.logging_setup import MaskSecretsFilter, build_logger


def test_build_logger_writes_app_and_action_files(tmp_path):
    log = build_logger(
        run_id="run-test-1", action="apply", base_dir=str(tmp_path),
        console_level="CRITICAL", extra={"kind": "address_policy", "order": "o1"},
    )
    log.info("converging %s", "DC.orders")
    logging.getLogger("prec.driver").warning("library record")

    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    action_file = tmp_path / today / "apply_run-test-1.log"
    app_file = tmp_path / "app.log"
    assert action_file.exists() and app_file.exists()

    action_text = action_file.read_text(encoding="utf-8")
    assert "converging DC.orders" in action_text
    assert "kind=address_policy order=o1" in action_text

    app_text = app_file.read_text(encoding="utf-8")
    assert "library record" in app_text
    assert "run=- action=-" in app_text


def test_secrets_are_redacted(tmp_path):
    log = build_logger(run_id="run-test-2", action="plan", base_dir=str(tmp_path), console_level="CRITICAL")
    log.info("calling portal with Authorization: Bearer abc.def-123")

    text = (tmp_path / "app.log").read_text(encoding="utf-8")
    assert "abc.def-123" not in text
    assert "***REDACTED***" in text

    assert MaskSecretsFilter.mask("password=hunter2, user=x") == "password=***REDACTED***, user=x"


def test_console_handler_not_duplicated(tmp_path):
    build_logger(run_id="r-a", action="plan", base_dir=str(tmp_path))
    build_logger(run_id="r-b", action="plan", base_dir=str(tmp_path))
    base = logging.getLogger("prec")
    consoles = [h for h in base.handlers if type(h) is logging.StreamHandler]
    assert len(consoles) == 1
