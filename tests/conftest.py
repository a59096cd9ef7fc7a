"""Shared fixtures: an in-process Warpgate gateway driven through httpx.MockTransport."""

import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import httpx
import pytest

from warpgate_broker.api import ADMIN_API_PREFIX, API_PREFIX, GatewayApiClient
from warpgate_broker.broker import SessionBroker
from warpgate_broker.config import MemoryConfigStore

GATEWAY_URL = "https://warpgate.example.com"
SESSION_COOKIE = "warpgate-http-session=abc123"

Handler = Callable[[httpx.Request], httpx.Response]


def auth_body(state: str, methods: Sequence[str] = ()) -> Dict[str, Any]:
    return {
        "protocol": "HTTP",
        "address": "10.0.0.1",
        "started": True,
        "auth": {"state": state, "methods_remaining": list(methods)},
    }


def target_body(name: str, kind: str = "Ssh", description: str = "") -> Dict[str, Any]:
    return {"name": name, "description": description, "kind": kind}


class FakeGateway:
    """Records requests and answers them from per-(method, path) routes.

    Unrouted requests get a 404, which is what a real gateway answers for an
    unknown endpoint.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "Not found"})
        return handler(request)

    def route(
        self,
        method: str,
        path: str,
        status: int = 200,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
        prefix: str = API_PREFIX,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if content is not None:
                return httpx.Response(status, content=content, headers=headers)
            if json is None:
                return httpx.Response(status, headers=headers)
            return httpx.Response(status, json=json, headers=headers)

        self.routes[(method, prefix + path)] = handler

    def route_handler(self, method: str, path: str, handler: Handler, prefix: str = API_PREFIX) -> None:
        self.routes[(method, prefix + path)] = handler

    def calls(self, method: str, path: str, prefix: str = API_PREFIX) -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path == prefix + path
        ]

    def client_factory(self, *args: Any, **kwargs: Any) -> GatewayApiClient:
        return GatewayApiClient(*args, transport=self.transport, **kwargs)

    # common gateway behaviours

    def accept_login(self, cookie: str = SESSION_COOKIE) -> None:
        self.route(
            "POST",
            "/auth/login",
            json=auth_body("Accepted"),
            headers={"set-cookie": f"{cookie}; HttpOnly; Path=/"},
        )
        self.route("GET", "/auth/state", json=auth_body("Accepted"))
        self.route("POST", "/auth/logout")

    def require_otp(self, cookie: str = SESSION_COOKIE, code: Optional[str] = None) -> None:
        self.route(
            "POST",
            "/auth/login",
            status=401,
            json=auth_body("Need", ["Otp"]),
            headers={"set-cookie": f"{cookie}; HttpOnly; Path=/"},
        )

        def submit_otp(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if code is not None and body.get("otp") != code:
                return httpx.Response(401, json={"state": "Failed"})
            return httpx.Response(200, json=auth_body("Accepted"))

        self.route_handler("POST", "/auth/otp", submit_otp)
        self.route("GET", "/auth/state", json=auth_body("Accepted"))
        self.route("POST", "/auth/logout")

    def serve_targets(self, *names: str) -> None:
        self.route(
            "GET",
            "/targets",
            json=[target_body(name) for name in names] + [target_body("web-admin", kind="WebAdmin")],
        )

    def issue_tickets(self, secret: str = "t1ck3t", uses_left: Optional[int] = 1, expiry: Optional[str] = None) -> None:
        def create(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            ticket = {
                "id": "ticket-id-1",
                "username": body["username"],
                "target": body["target_name"],
                "uses_left": uses_left,
                "expiry": expiry,
            }
            return httpx.Response(201, json={"ticket": ticket, "secret": secret})

        self.route_handler("POST", "/tickets", create, prefix=ADMIN_API_PREFIX)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> MemoryConfigStore:
    return MemoryConfigStore({"auto_refresh_interval": 0})


@pytest.fixture
def notifications() -> MagicMock:
    return MagicMock()


@pytest.fixture
def broker(gateway, store, notifications) -> SessionBroker:
    return SessionBroker(store, notifications, client_factory=gateway.client_factory)


def server_entry(name: str = "Production", **overrides: Any) -> Dict[str, Any]:
    entry = {
        "name": name,
        "url": GATEWAY_URL,
        "username": "alice",
        "password": "s3cret",
        "enabled": True,
    }
    entry.update(overrides)
    return entry
