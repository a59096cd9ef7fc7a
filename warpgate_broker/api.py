"""HTTP client for the Warpgate gateway API.

This module provides ``GatewayApiClient``, one instance per configured
gateway. The client owns the gateway's base URL, the TLS trust setting and a
single session cookie, and exposes every gateway operation the broker needs
as a coroutine returning an ``ApiResponse``.

Key Features:
- Uniform ``ApiResponse(success, data, error)`` results; ordinary failures
  are never raised
- Session cookie captured from ``Set-Cookie`` on every response, since the
  gateway may rotate it mid-flow
- Normalization of the gateway's several authentication-state shapes
- Stable messages for network failures (DNS, timeout, reset, certificate)
- Admin endpoints tried under ``/@warpgate/admin/api`` first and under
  ``/@warpgate/api`` on gateways that predate the admin API split
- Connection-string helpers for ticket and password authentication

Requests are made with httpx. A transport may be injected, which is how the
test suite drives the client against an in-process fake gateway.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from .types import (
    AUTH_ACCEPTED,
    AUTH_NEED,
    AUTH_NOT_STARTED,
    AUTH_REJECTED,
    ERROR_AUTH,
    ERROR_HTTP,
    ERROR_NETWORK,
    KIND_SSH,
    METHOD_OTP,
    METHOD_PASSWORD,
    ApiError,
    ApiResponse,
    AuthState,
    Target,
    Ticket,
    TicketAndSecret,
    TicketRequest,
)
from .util import error_message, normalize_url, truncate, url_hostname, url_port

logger = logging.getLogger("warpgate_broker.api")

API_PREFIX = "/@warpgate/api"
ADMIN_API_PREFIX = "/@warpgate/admin/api"

DEFAULT_TIMEOUT = 30.0
DEFAULT_SSH_PORT = 2222
MAX_ERROR_BODY = 200

SESSION_COOKIE_PATTERN = re.compile(r"(?:^|[,;])\s*(warpgate[\w.-]*)=([^;,\s]*)")

# Bare state strings the gateway returns in 401 bodies
BARE_AUTH_STATES = {
    "PasswordNeeded": (AUTH_NEED, [METHOD_PASSWORD]),
    "OtpNeeded": (AUTH_NEED, [METHOD_OTP]),
    "Failed": (AUTH_REJECTED, []),
    "Rejected": (AUTH_REJECTED, []),
    "Accepted": (AUTH_ACCEPTED, []),
}

NETWORK_ERROR_PATTERNS = [
    (
        "Server not found",
        (
            "enotfound",
            "getaddrinfo",
            "name or service not known",
            "nodename nor servname",
            "temporary failure in name resolution",
            "no address associated",
        ),
    ),
    ("Connection timed out", ("timed out", "timeout", "etimedout")),
    ("Connection reset", ("econnreset", "connection reset", "reset by peer")),
    ("Certificate error", ("certificate", "cert_", "ssl")),
]


def parse_session_cookie(header: str) -> Optional[str]:
    """Extract the gateway session cookie from a ``Set-Cookie`` header value.

    Args:
        header: A ``Set-Cookie`` header value. Several cookies joined with
            commas are accepted.

    Returns:
        ``name=value`` for the first cookie whose name starts with
        ``warpgate``, or None if the header names no such cookie.

    Example:
        >>> parse_session_cookie("warpgate-http-session=abc123; HttpOnly; Path=/")
        'warpgate-http-session=abc123'
        >>> parse_session_cookie("theme=dark; Path=/") is None
        True
    """
    match = SESSION_COOKIE_PATTERN.search(header)
    if match is None:
        return None
    return f"{match.group(1)}={match.group(2)}"


def normalize_network_error(error: BaseException) -> ApiError:
    """Map a network-layer exception to a stable ``ApiError``.

    The exception message is matched against known patterns for address
    resolution failures, timeouts, connection resets and certificate
    problems. Anything else keeps its raw message. The status is always 0.
    """
    message = error_message(error)
    if isinstance(error, httpx.TimeoutException):
        return ApiError(0, "Connection timed out", message, ERROR_NETWORK)
    lowered = message.lower()
    for category, patterns in NETWORK_ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return ApiError(0, category, message, ERROR_NETWORK)
    return ApiError(0, message, None, ERROR_NETWORK)


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def http_error(response: httpx.Response) -> ApiError:
    """Build an ``ApiError`` for a non-2xx response."""
    text = response.text
    message = None
    body = _json_body(response)
    if isinstance(body, dict):
        for key in ("error", "message"):
            if isinstance(body.get(key), str) and body[key]:
                message = body[key]
                break
    if not message:
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
    kind = ERROR_AUTH if response.status_code in (401, 403) else ERROR_HTTP
    details = truncate(text, MAX_ERROR_BODY) if text else None
    return ApiError(response.status_code, message, details, kind)


class GatewayApiClient:
    """Client for one Warpgate gateway.

    Args:
        server_url: Gateway URL. The scheme defaults to https and trailing
            slashes are removed.
        trust_self_signed: Skip TLS certificate verification.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, used instead of the network.

    Example:
        >>> client = GatewayApiClient("warpgate.example.com")
        >>> result = await client.login("alice", "s3cret")
        >>> if result.success and result.data.needs_otp:
        ...     result = await client.submit_otp("123456")
        >>> targets = await client.get_ssh_targets()
    """

    def __init__(
        self,
        server_url: str,
        trust_self_signed: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = normalize_url(server_url)
        self.trust_self_signed = bool(trust_self_signed)
        self.timeout = timeout
        self._transport = transport
        self._session_cookie: Optional[str] = None

    # session cookie

    @property
    def session_cookie(self) -> Optional[str]:
        return self._session_cookie

    def set_session_cookie(self, cookie: Optional[str]) -> None:
        self._session_cookie = cookie

    def has_session(self) -> bool:
        return self._session_cookie is not None

    def session_cookie_value(self) -> Optional[str]:
        """Return the cookie value without its name."""
        if self._session_cookie is None:
            return None
        return self._session_cookie.partition("=")[2]

    def _capture_cookie(self, response: httpx.Response) -> None:
        for header in response.headers.get_list("set-cookie"):
            cookie = parse_session_cookie(header)
            if cookie is not None:
                self._session_cookie = cookie
                return

    # transport

    async def _send(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        params: Optional[Dict[str, str]] = None,
        prefix: str = API_PREFIX,
    ) -> Union[httpx.Response, ApiError]:
        url = f"{self.base_url}{prefix}{endpoint}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._session_cookie:
            headers["Cookie"] = self._session_cookie

        logger.debug(f"{method} {url}")
        try:
            async with httpx.AsyncClient(
                verify=not self.trust_self_signed,
                timeout=self.timeout,
                transport=self._transport,
            ) as http:
                response = await http.request(
                    method, url, headers=headers, json=body, params=params
                )
        except (httpx.HTTPError, OSError) as e:
            error = normalize_network_error(e)
            logger.warning(f"{method} {url} failed: {error.message} ({type(e).__name__})")
            return error

        self._capture_cookie(response)
        logger.debug(f"{method} {url} -> {response.status_code}")
        return response

    async def _send_admin(
        self, method: str, endpoint: str, body: Any = None
    ) -> Union[httpx.Response, ApiError]:
        response = await self._send(method, endpoint, body, prefix=ADMIN_API_PREFIX)
        if isinstance(response, httpx.Response) and response.status_code == 404:
            logger.debug(f"no admin API at {ADMIN_API_PREFIX}, retrying {endpoint} under {API_PREFIX}")
            response = await self._send(method, endpoint, body, prefix=API_PREFIX)
        return response

    def _result(self, response: Union[httpx.Response, ApiError]) -> ApiResponse:
        if isinstance(response, ApiError):
            return ApiResponse(False, error=response)
        if response.is_success:
            return ApiResponse(True, data=_json_body(response))
        return ApiResponse(False, error=http_error(response))

    def _auth_result(
        self, response: Union[httpx.Response, ApiError], assume_accepted: bool
    ) -> ApiResponse:
        """Fold any authentication response into an ``AuthState`` result.

        Structured states are returned as successful results whatever the
        status code, so callers have a single state representation. Bare
        state strings are mapped to structured states, except ``NotStarted``
        which means the session expired. A 2xx answer without a state is
        taken as acceptance when ``assume_accepted`` is set.
        """
        if isinstance(response, ApiError):
            return ApiResponse(False, error=response)

        body = _json_body(response)
        if isinstance(body, dict) and isinstance(body.get("state"), str):
            bare = body["state"]
            if bare == AUTH_NOT_STARTED:
                details = truncate(response.text, MAX_ERROR_BODY)
                return ApiResponse(
                    False,
                    error=ApiError(response.status_code, "Session expired", details, ERROR_AUTH),
                )
            if bare in BARE_AUTH_STATES:
                state, methods = BARE_AUTH_STATES[bare]
                return ApiResponse(True, data=AuthState(state=state, methods_remaining=tuple(methods)))

        state = AuthState.from_json(body)
        if state is not None:
            return ApiResponse(True, data=state)
        if not response.is_success:
            return ApiResponse(False, error=http_error(response))
        if assume_accepted:
            return ApiResponse(True, data=AuthState(state=AUTH_ACCEPTED, started=True))
        return ApiResponse(True, data=None)

    # authentication

    async def login(self, username: str, password: str) -> ApiResponse:
        """Start a password login. ``data`` is the resulting ``AuthState``."""
        response = await self._send(
            "POST", "/auth/login", {"username": username, "password": password}
        )
        return self._auth_result(response, assume_accepted=True)

    async def logout(self) -> ApiResponse:
        """End the session; the stored cookie is cleared on success."""
        result = self._result(await self._send("POST", "/auth/logout"))
        if result.success:
            self._session_cookie = None
        return result

    async def get_auth_state(self) -> ApiResponse:
        return self._auth_result(await self._send("GET", "/auth/state"), assume_accepted=False)

    async def submit_otp(self, otp: str) -> ApiResponse:
        """Submit a one-time code. ``data`` is the resulting ``AuthState``."""
        response = await self._send("POST", "/auth/otp", {"otp": otp})
        return self._auth_result(response, assume_accepted=True)

    async def test_connection(self) -> ApiResponse:
        """Check that the gateway answers; ``data`` is True on success."""
        try:
            result = await self.get_auth_state()
        except Exception as e:
            logger.warning(f"connection test to {self.base_url} raised {type(e).__name__}: {e}")
            return ApiResponse(False, error=ApiError(0, "Connection failed", kind=ERROR_NETWORK))
        if not result.success:
            return ApiResponse(
                False,
                error=result.error or ApiError(0, "Connection failed", kind=ERROR_NETWORK),
            )
        return ApiResponse(True, data=True)

    # targets

    async def get_targets(self, search: Optional[str] = None) -> ApiResponse:
        """List targets, optionally filtered by a search string."""
        params = {"search": search} if search else None
        result = self._result(await self._send("GET", "/targets", params=params))
        if not result.success:
            return result
        items = result.data if isinstance(result.data, list) else []
        return ApiResponse(True, data=[Target.from_json(item) for item in items if isinstance(item, dict)])

    async def get_ssh_targets(self) -> ApiResponse:
        result = await self.get_targets()
        if not result.success:
            return result
        return ApiResponse(True, data=[target for target in result.data if target.kind == KIND_SSH])

    async def get_user_info(self) -> ApiResponse:
        return self._result(await self._send("GET", "/info"))

    # tickets

    async def create_ticket(self, request: TicketRequest) -> ApiResponse:
        """Create a ticket. ``data`` is a ``TicketAndSecret``."""
        result = self._result(await self._send_admin("POST", "/tickets", request.to_json()))
        if not result.success:
            return result
        data = result.data if isinstance(result.data, dict) else {}
        if not data.get("secret"):
            return ApiResponse(
                False, error=ApiError(0, "Ticket response did not include a secret", kind=ERROR_HTTP)
            )
        return ApiResponse(
            True,
            data=TicketAndSecret(
                ticket=Ticket.from_json(data.get("ticket") or {}),
                secret=data["secret"],
            ),
        )

    async def list_tickets(self) -> ApiResponse:
        result = self._result(await self._send_admin("GET", "/tickets"))
        if not result.success:
            return result
        items = result.data if isinstance(result.data, list) else []
        return ApiResponse(True, data=[Ticket.from_json(item) for item in items])

    async def delete_ticket(self, ticket_id: str) -> ApiResponse:
        return self._result(await self._send_admin("DELETE", f"/tickets/{quote(ticket_id, safe='')}"))

    # OTP credentials

    async def get_profile_credentials(self) -> ApiResponse:
        return self._result(await self._send("GET", "/profile/credentials"))

    async def enable_profile_otp(self, secret_key: bytes) -> ApiResponse:
        """Register an OTP secret for the logged-in user."""
        return self._result(
            await self._send("POST", "/profile/credentials/otp", {"secret_key": list(secret_key)})
        )

    async def delete_profile_otp(self, credential_id: str) -> ApiResponse:
        return self._result(
            await self._send("DELETE", f"/profile/credentials/otp/{quote(credential_id, safe='')}")
        )

    async def list_user_otp_credentials(self, user_id: str) -> ApiResponse:
        return self._result(
            await self._send_admin("GET", f"/users/{quote(user_id, safe='')}/credentials/otp")
        )

    async def create_user_otp_credential(self, user_id: str, secret_key: bytes) -> ApiResponse:
        return self._result(
            await self._send_admin(
                "POST",
                f"/users/{quote(user_id, safe='')}/credentials/otp",
                {"secret_key": list(secret_key)},
            )
        )

    async def delete_user_otp_credential(self, user_id: str, credential_id: str) -> ApiResponse:
        return self._result(
            await self._send_admin(
                "DELETE",
                f"/users/{quote(user_id, safe='')}/credentials/otp/{quote(credential_id, safe='')}",
            )
        )

    # connection helpers

    def get_ssh_host(self) -> str:
        return url_hostname(self.base_url)

    def get_ssh_port(self) -> int:
        """Return the gateway SSH port: the URL's explicit port, else 2222."""
        return url_port(self.base_url) or DEFAULT_SSH_PORT

    @staticmethod
    def generate_ticket_username(secret: str) -> str:
        return f"ticket-{secret}"

    @staticmethod
    def generate_ssh_connection_string(
        target_name: str, username: str, host: str, port: int = 22
    ) -> str:
        """Return ``user:target@host:port``, the gateway's SSH addressing form."""
        return f"{username}:{target_name}@{host}:{port}"

    @staticmethod
    def generate_ticket_connection_string(
        secret: str, host: str, port: int = DEFAULT_SSH_PORT
    ) -> str:
        return f"ticket-{secret}@{host}:{port}"
