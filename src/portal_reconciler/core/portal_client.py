"""
Order-service HTTP client.

- JSON only, bearer token, `requests.Session`.
- Retries with exponential backoff on network errors and 5xx; no retry on 4xx.
- Errors as PortalError(status, url, body); exhausted timeouts as PortalTimeout.
- Order helpers: get_order, parent_item, run_action, wait_success.

Usage:
    client = PortalClient(base_url, token, "my-project", retries=3)
    client.run_action(order_id, "vtb-artemis_create_tuz", {"users": [...]})
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

import requests
import urllib3

PENDING_STATES = ("pending", "changing", "removing")
NEW_STATES = ("new",)
ORDER_OK_STATES = ("success", "deprovisioned")


class PortalError(Exception):
    """HTTP/transport error with context."""

    def __init__(self, status: int, url: str, body: str = "", message: str = "") -> None:
        self.status = status
        self.url = url
        self.body = body
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"PortalError(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


class PortalTimeout(TimeoutError):
    """A request or an order wait ran out of time."""

    def __init__(self, url: str, message: str = "timed out") -> None:
        self.url = url
        self.message = message
        super().__init__(f"{message} ({url})")


class OrderFailed(Exception):
    """The order or its last action ended in a non-success state."""

    def __init__(self, order_id: str, status: str, message: str, output: Any = None) -> None:
        self.order_id = order_id
        self.status = status
        self.output = output
        super().__init__(f"order '{order_id}': {message}")


class PortalClient:
    """JSON client for one project of the order service."""

    def __init__(
        self,
        base_url: str,
        token: str,
        project: str,
        *,
        verify_tls: bool = True,
        timeout_sec: float = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.05,
        poll_interval_sec: float = 10.0,
        wait_timeout_sec: float = 1800.0,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not project:
            raise ValueError("project is required")
        self.base_url = base_url.rstrip("/")
        self.project = project
        self.verify_tls = bool(verify_tls)
        self.timeout = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff_base_sec)
        self.poll_interval = float(poll_interval_sec)
        self.wait_timeout = float(wait_timeout_sec)
        self.log = logger or logging.getLogger("prec.http")

        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "User-Agent": "portal-reconciler/HTTPClient",
        })
        if not self.verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ------------- JSON helpers -------------

    def get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self._request_json("GET", path, params=params)

    def patch_json(self, path: str, payload: Mapping[str, Any]) -> Any:
        return self._request_json("PATCH", path, payload=payload)

    # ------------- Paths -------------

    def order_path(self, order_id: str) -> str:
        return f"order-service/api/v1/projects/{self.project}/orders/{order_id}"

    def action_path(self, order_id: str, action: str) -> str:
        return f"{self.order_path(order_id)}/actions/{action}"

    # ------------- Orders -------------

    def get_order(self, order_id: str) -> Dict[str, Any]:
        data = self.get_json(self.order_path(order_id), params={"include": "last_action"})
        if not isinstance(data, dict):
            raise PortalError(status=0, url=self._full_url(self.order_path(order_id)),
                              message="order payload is not an object")
        return data

    @staticmethod
    def parent_item(order: Mapping[str, Any]) -> Dict[str, Any]:
        """Return the order item without a parent (the product item itself)."""
        items = order.get("data") or []
        if not items:
            raise OrderFailed(str(order.get("id", "")), str(order.get("status", "")), "order has no items")
        for item in items:
            if not (item.get("data") or {}).get("parent"):
                return item
        raise OrderFailed(str(order.get("id", "")), str(order.get("status", "")),
                          "can't find item without parent")

    def run_action(
        self,
        order_id: str,
        action: str,
        attrs: Mapping[str, Any],
        *,
        wait: bool = True,
    ) -> Dict[str, Any]:
        """PATCH an order action on the parent item, then wait for the order to settle."""
        order = self.get_order(order_id)
        item = self.parent_item(order)
        body = {
            "item_id": item.get("item_id"),
            "order": {"attrs": dict(attrs, created_with_opentofu=True)},
        }
        self.log.info("order %s: action %s", order_id, action)
        self.patch_json(self.action_path(order_id, action), body)
        if not wait:
            return order
        return self.wait_success(order_id)

    def wait_success(self, order_id: str) -> Dict[str, Any]:
        """
        Poll the order until its status, then its last action, leave the pending
        states. Raises OrderFailed on a bad outcome, PortalTimeout past the deadline.
        """
        deadline = time.monotonic() + self.wait_timeout

        order = self.get_order(order_id)
        while str(order.get("status", "")) in PENDING_STATES:
            self.log.debug("order %s status: %s, still pending", order_id, order.get("status"))
            self._sleep_poll(order_id, deadline)
            order = self.get_order(order_id)

        status = str(order.get("status", ""))
        if status not in ORDER_OK_STATES:
            raise OrderFailed(order_id, status, f"failed with status '{status}'")

        action_status = self._last_action_status(order_id, order)
        while action_status in PENDING_STATES + NEW_STATES:
            self.log.debug("order %s last action: %s, still pending", order_id, action_status)
            self._sleep_poll(order_id, deadline)
            order = self.get_order(order_id)
            action_status = self._last_action_status(order_id, order)

        if action_status == "warning":
            raise OrderFailed(
                order_id, action_status,
                "last action ended with status 'warning'; check the order on the portal",
            )
        if action_status != "success":
            output = self.last_action_output(order_id, order)
            raise OrderFailed(
                order_id, action_status,
                f"last action failed with status '{action_status}'; last action output: {output}",
                output=output,
            )
        return order

    def last_action_output(self, order_id: str, order: Mapping[str, Any]) -> Any:
        """First non-empty text output of the last action, or None."""
        action_id = (order.get("last_action") or {}).get("id")
        if not action_id:
            return None
        path = f"{self.order_path(order_id)}/actions/history/{action_id}/output"
        try:
            data = self.get_json(path, params={"include": "total_count", "page": 1, "per_page": 10})
        except PortalError as exc:
            self.log.warning("order %s: can't read last action output: %s", order_id, exc)
            return None
        entries: List[Any] = data.get("list") or [] if isinstance(data, dict) else []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            if entry.get("type") == "text" and entry.get("data"):
                return entry["data"]
        return None

    # ------------- Internal -------------

    @staticmethod
    def _last_action_status(order_id: str, order: Mapping[str, Any]) -> str:
        status = str((order.get("last_action") or {}).get("status") or "")
        if not status:
            raise OrderFailed(order_id, "", "can't get last action status")
        return status

    def _sleep_poll(self, order_id: str, deadline: float) -> None:
        if time.monotonic() >= deadline:
            raise PortalTimeout(
                self._full_url(self.order_path(order_id)),
                f"order did not settle within {self.wait_timeout:.0f}s",
            )
        time.sleep(self.poll_interval)

    def _full_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        url = self._full_url(path)
        attempts = self.retries + 1
        for attempt in range(attempts):
            last_try = attempt == attempts - 1
            start = time.time()
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    json=payload,
                    params=params,
                    timeout=self.timeout,
                    verify=self.verify_tls,
                )
            except requests.Timeout as exc:
                self.log.warning("%s %s timed out: %s", method, path, exc)
                if not last_try:
                    self._sleep_backoff(attempt)
                    continue
                raise PortalTimeout(url) from exc
            except requests.RequestException as exc:
                err = PortalError(status=0, url=url, message=str(exc))
                self.log.warning("%s %s failed (status=0): %s", method, path, err)
                if not last_try:
                    self._sleep_backoff(attempt)
                    continue
                raise err from exc

            elapsed = (time.time() - start) * 1000
            if resp.status_code >= 400:
                err = PortalError(status=resp.status_code, url=url, body=resp.text or "",
                                  message=resp.reason or "")
                self.log.warning("%s %s failed (status=%s): %s", method, path, resp.status_code, err)
                if resp.status_code >= 500 and not last_try:
                    self._sleep_backoff(attempt)
                    continue
                raise err

            self.log.debug("%s %s -> %s in %.1fms", method, path, resp.status_code, elapsed)
            if resp.status_code == 204 or not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as exc:
                raise PortalError(status=resp.status_code, url=url, body=resp.text,
                                  message="invalid JSON response") from exc
        raise PortalError(status=0, url=url, message="no attempt made")  # pragma: no cover

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.backoff * (2 ** attempt))
