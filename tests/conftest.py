import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Set, Tuple
from urllib.parse import urlparse

import pytest

from portal_reconciler.core.profiles import ProfileLoader


class FakeRemote:
    """Records calls; fails or times out for the identities it is told to."""

    def __init__(self, fail: Dict[str, Set[str]] = None, interrupt: Dict[str, Set[str]] = None):
        self.calls: List[Tuple[str, List[str]]] = []
        self.payloads: List[Tuple[str, object]] = []
        self.fail = fail or {}
        self.interrupt = interrupt or {}

    def _check(self, op, ids):
        if any(i in self.interrupt.get(op, ()) for i in ids):
            raise TimeoutError(f"{op} timed out")
        if any(i in self.fail.get(op, ()) for i in ids):
            raise RuntimeError(f"{op} rejected by portal")

    def create_batch(self, entities):
        ids = [e.identity for e in entities]
        self.calls.append(("create", ids))
        self.payloads.append(("create", list(entities)))
        self._check("create", ids)

    def update_one(self, update):
        self.calls.append(("update", [update.identity]))
        self.payloads.append(("update", update))
        self._check("update", [update.identity])

    def delete_batch(self, deletes):
        ids = [d.identity for d in deletes]
        self.calls.append(("delete", ids))
        self.payloads.append(("delete", list(deletes)))
        self._check("delete", ids)


@pytest.fixture
def fake_remote():
    return FakeRemote


@pytest.fixture
def address_profile():
    return ProfileLoader().load("address_policy")


@pytest.fixture
def make_policy(address_profile):
    def _make(name, prefix="DC.", **fields):
        row = {
            "address_prefix": prefix,
            "address_name": name,
            "address_full_policy": "PAGE",
            "max_size": "100Mb",
            "slow_consumer_policy": "NOTIFY",
            "slow_consumer_check_period": 5,
            "slow_consumer_threshold": 10,
        }
        row.update(fields)
        return address_profile.build_entity(row)
    return _make


# ---------- Order-service stub ----------

_ORDER_RE = re.compile(r"^/order-service/api/v1/projects/(?P<project>[^/]+)/orders/(?P<order>[^/]+)(?P<rest>/.*)?$")


class PortalState:
    """What the stub serves; tests mutate it between calls."""

    def __init__(self):
        self.config: Dict[str, list] = {}
        # (order status, last action status) served by successive GETs; the last one sticks
        self.sequence: List[Tuple[str, str]] = [("success", "success")]
        self.output = "action log: ok"
        self.forced: Dict[str, List[int]] = {}   # path -> status codes served before normal handling
        self.patches: List[Tuple[str, dict]] = []
        self.hits: Dict[str, int] = {}
        self.auth: List[str] = []


class _OrderServiceHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    @property
    def state(self) -> PortalState:
        return self.server.state  # type: ignore[attr-defined]

    def _send_json(self, status: int, obj) -> None:
        raw = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _forced(self, path: str) -> bool:
        self.state.hits[path] = self.state.hits.get(path, 0) + 1
        self.state.auth.append(self.headers.get("Authorization", ""))
        codes = self.state.forced.get(path)
        if codes:
            self._send_json(codes.pop(0), {"error": "forced"})
            return True
        return False

    def _order(self, order_id: str) -> dict:
        seq = self.state.sequence
        status, action_status = seq.pop(0) if len(seq) > 1 else seq[0]
        return {
            "id": order_id,
            "status": status,
            "last_action": {"id": "act-1", "status": action_status},
            "data": [
                {"item_id": "child-1", "data": {"parent": "item-1"}},
                {"item_id": "item-1", "data": {"parent": None, "config": self.state.config}},
            ],
        }

    def do_GET(self):  # noqa: N802
        path = urlparse(self.path).path
        if self._forced(path):
            return
        m = _ORDER_RE.match(path)
        if not m:
            self._send_json(404, {"error": "not found"})
        elif not m.group("rest"):
            self._send_json(200, self._order(m.group("order")))
        elif m.group("rest").endswith("/output"):
            self._send_json(200, {"list": [
                {"type": "json", "data": {"step": 1}},
                {"type": "text", "data": self.state.output},
            ]})
        else:
            self._send_json(404, {"error": "not found"})

    def do_PATCH(self):  # noqa: N802
        path = urlparse(self.path).path
        length = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(length).decode("utf-8")) if length else {}
        if self._forced(path):
            return
        m = _ORDER_RE.match(path)
        if not m or not (m.group("rest") or "").startswith("/actions/"):
            self._send_json(404, {"error": "not found"})
            return
        self.state.patches.append((m.group("rest")[len("/actions/"):], body))
        self._send_json(200, {})

    def log_message(self, fmt, *args):  # silence server logs during tests
        return


@pytest.fixture()
def portal_server():
    """Yield (base_url, PortalState) for a stub order service on an ephemeral port."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _OrderServiceHandler)
    server.state = PortalState()  # type: ignore[attr-defined]
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://{host}:{port}", server.state  # type: ignore[attr-defined]
    server.shutdown()
    thread.join(timeout=1.0)
