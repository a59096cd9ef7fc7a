"""Type definitions for the Warpgate session broker.

This module defines the data types exchanged between the gateway API client,
the broker and its collaborators: gateway responses (targets, authentication
state, tickets), in-memory broker state (sessions, connection status), the
credentials handed to SSH clients, and the protocols the broker expects its
collaborators to implement.

Immutable values are NamedTuples; state the broker updates in place
(connection status) is a dataclass. Server entries are plain dicts because
they live inside the persisted configuration document.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Tuple, TypedDict

# Authentication states reported by the gateway
AUTH_NOT_STARTED = "NotStarted"
AUTH_PROGRESS = "Progress"
AUTH_NEED = "Need"
AUTH_ACCEPTED = "Accepted"
AUTH_REJECTED = "Rejected"

METHOD_PASSWORD = "Password"
METHOD_OTP = "Otp"

# Target kinds
KIND_SSH = "Ssh"
KIND_HTTP = "Http"
KIND_MYSQL = "MySql"
KIND_WEB_ADMIN = "WebAdmin"

# Connect state machine
STATE_DISCONNECTED = "Disconnected"
STATE_AUTHENTICATING = "Authenticating"
STATE_OTP_PENDING = "OtpPending"
STATE_CONNECTED = "Connected"
STATE_FAILED = "Failed"

# ApiError kinds
ERROR_NETWORK = "network"
ERROR_HTTP = "http"
ERROR_AUTH = "auth"


class ServerConfig(TypedDict, total=False):
    """A configured gateway as stored in the ``servers`` config list."""

    id: str
    name: str
    url: str
    username: str
    password: str
    enabled: bool
    trust_self_signed: bool
    otp_secret: str
    last_connected: str


class Group(NamedTuple):
    """Target group used by the gateway to organize targets."""

    id: str
    name: str
    color: Optional[str] = None


class Target(NamedTuple):
    """A host or service reachable through the gateway.

    Attributes:
        name: Target name, also used in ``user:target`` SSH usernames.
        description: Free-form description, may be empty.
        kind: One of ``Ssh``, ``Http``, ``MySql`` or ``WebAdmin``.
        group: Optional group the target belongs to.
    """

    name: str
    description: str = ""
    kind: str = KIND_SSH
    group: Optional[Group] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Target":
        group = data.get("group")
        return cls(
            name=data.get("name", ""),
            description=data.get("description") or "",
            kind=data.get("kind", ""),
            group=(
                Group(
                    id=str(group.get("id", "")),
                    name=group.get("name", ""),
                    color=group.get("color"),
                )
                if isinstance(group, dict)
                else None
            ),
        )


class AuthState(NamedTuple):
    """Authentication state reported by the gateway.

    The gateway answers ``/auth/login``, ``/auth/otp`` and ``/auth/state``
    with this structure, sometimes wrapped under a ``state`` key and, on
    401 responses, sometimes as a bare state string. ``from_json`` accepts
    the structured shapes; the API client normalizes the bare strings.

    Attributes:
        state: One of ``NotStarted``, ``Progress``, ``Need``, ``Accepted``
            or ``Rejected``.
        methods_remaining: Credential kinds still required, e.g. ``("Otp",)``.
        started: Whether an authentication attempt is in progress.
        protocol: Protocol the state belongs to, usually ``HTTP``.
        address: Client address seen by the gateway.
    """

    state: str
    methods_remaining: Tuple[str, ...] = ()
    started: bool = False
    protocol: str = ""
    address: str = ""

    @classmethod
    def from_json(cls, data: Any) -> Optional["AuthState"]:
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("state"), dict):
            data = data["state"]
        auth = data.get("auth")
        if not isinstance(auth, dict) or "state" not in auth:
            return None
        return cls(
            state=auth["state"],
            methods_remaining=tuple(auth.get("methods_remaining") or ()),
            started=bool(data.get("started", False)),
            protocol=data.get("protocol", ""),
            address=data.get("address", ""),
        )

    @property
    def accepted(self) -> bool:
        return self.state == AUTH_ACCEPTED

    @property
    def needs_otp(self) -> bool:
        return self.state == AUTH_NEED and METHOD_OTP in self.methods_remaining


class ApiError(NamedTuple):
    """Normalized failure of a gateway API call.

    Attributes:
        status: HTTP status code, or 0 for network-layer failures.
        message: Stable, human readable message.
        details: Raw detail such as a truncated response body.
        kind: ``network``, ``http`` or ``auth``.
    """

    status: int
    message: str
    details: Optional[str] = None
    kind: str = ERROR_HTTP


class ApiResponse(NamedTuple):
    """Uniform result of every gateway API call."""

    success: bool
    data: Any = None
    error: Optional[ApiError] = None


class Session(NamedTuple):
    """An authenticated gateway session held in broker memory."""

    server_id: str
    cookie: str
    expires_at: datetime
    username: str

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TicketRequest(NamedTuple):
    """Body of a ticket creation request."""

    username: str
    target_name: str
    expiry: Optional[str] = None
    number_of_uses: Optional[int] = None
    description: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {key: value for key, value in self._asdict().items() if value is not None}


class Ticket(NamedTuple):
    """Ticket record returned by the gateway admin API."""

    id: str
    username: str
    target: str
    created: Optional[str] = None
    expiry: Optional[str] = None
    uses_left: Optional[int] = None
    description: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Ticket":
        return cls(
            id=str(data.get("id", "")),
            username=data.get("username", ""),
            target=data.get("target") or data.get("target_name", ""),
            created=data.get("created"),
            expiry=data.get("expiry"),
            uses_left=data.get("uses_left"),
            description=data.get("description"),
        )


class TicketAndSecret(NamedTuple):
    """Response of ticket creation; the secret is only returned once."""

    ticket: Ticket
    secret: str


@dataclass
class ConnectionStatus:
    """Connection state of one configured server."""

    server_id: str
    connected: bool = False
    state: str = STATE_DISCONNECTED
    last_error: Optional[str] = None
    last_checked: Optional[datetime] = None
    targets: List[Target] = field(default_factory=list)


class ConnectionDetails(NamedTuple):
    """Credentials for one outbound SSH connection through the gateway.

    With ``use_ticket`` the username is ``ticket-<secret>`` and nothing else
    is needed. Otherwise the username is ``<gateway user>:<target>`` and the
    password (plus ``otp_code`` when a TOTP secret is stored) answer the
    gateway's keyboard-interactive prompts.
    """

    host: str
    port: int
    username: str
    password: Optional[str] = None
    use_ticket: bool = False
    otp_code: Optional[str] = None


class ConnectionTestResult(NamedTuple):
    """Outcome of validating a server before it is saved."""

    success: bool
    error: Optional[str] = None
    needs_otp: bool = False
    session_cookie: Optional[str] = None


class BrokerEvent(NamedTuple):
    """Event emitted on the broker's ``events`` stream."""

    type: str
    server_id: Optional[str] = None
    data: Any = None
    error: Optional[str] = None


class NotificationSink(Protocol):
    """User-facing notifications."""

    def info(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...

    def notice(self, message: str) -> None: ...


class OtpPrompter(Protocol):
    """Asks the operator for an OTP code; returns None when cancelled."""

    async def prompt(self, server_name: str) -> Optional[str]: ...
