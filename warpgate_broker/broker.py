"""Session and ticket broker for Warpgate gateways.

This module provides ``SessionBroker``, the orchestrator that ties the
gateway API clients, the TOTP generator and the ticket cache together. It
owns one API client and at most one session per configured server, drives
the login/OTP state machine, keeps the target lists and connection status of
every server, and resolves the credentials an SSH client needs to reach a
target through the gateway.

Key Features:
- Connect state machine: session reuse, password login, OTP from a stored
  TOTP secret or from an operator prompt
- Test connections before a server is saved, with the authenticated session
  retained for a few minutes and adopted by ``add_server``
- Index-addressed, save-after-mutation handling of the ``servers`` list in
  the persisted configuration
- One-time ticket issuance with caching and a password fallback
- Concurrent fan-out for connecting and refreshing all servers, failures
  recorded per server
- Periodic target refresh
- Pinned targets persisted as ``serverId:targetName`` keys

State machine (per server):

    Disconnected -> Authenticating -> OtpPending -> Connected
                          |               |
                          +---> Failed <--+

Every transition updates the ``status`` stream and emits a
``connection-changed`` event. ``Connected`` and ``Failed`` also notify the
operator.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from . import base32, totp
from .api import DEFAULT_TIMEOUT, GatewayApiClient
from .config import ConfigStore, apply_defaults
from .events import ValueStream
from .exceptions import InvalidSecretFormat, ServerNotFound
from .tickets import CachedTicket, TicketCache
from .types import (
    AUTH_NEED,
    AUTH_REJECTED,
    STATE_AUTHENTICATING,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    STATE_FAILED,
    STATE_OTP_PENDING,
    ApiError,
    AuthState,
    BrokerEvent,
    ConnectionDetails,
    ConnectionStatus,
    ConnectionTestResult,
    NotificationSink,
    OtpPrompter,
    ServerConfig,
    Session,
    Target,
    TicketRequest,
)
from .util import (
    error_message,
    generate_id,
    normalize_url,
    parse_timestamp,
    set_debug_mode,
    utcnow,
)

logger = logging.getLogger("warpgate_broker.broker")

SESSION_LIFETIME = timedelta(hours=24)
DEFAULT_TEST_SESSION_TTL = 300.0

# Changing any of these invalidates the server's client and session
CREDENTIAL_FIELDS = ("url", "username", "password", "trust_self_signed")

EVENT_SERVER_ADDED = "server-added"
EVENT_SERVER_REMOVED = "server-removed"
EVENT_SERVER_UPDATED = "server-updated"
EVENT_TARGETS_UPDATED = "targets-updated"
EVENT_CONNECTION_CHANGED = "connection-changed"
EVENT_OTP_REQUIRED = "otp-required"
EVENT_ERROR = "error"


class AuthOutcome(NamedTuple):
    success: bool
    error: Optional[str] = None
    needs_otp: bool = False


def pending_session_key(url: str, username: str) -> str:
    """Return the registry key of a test session for ``(url, username)``."""
    return f"test:{normalize_url(url)}:{username}"


def pinned_host_key(server_id: str, target_name: str) -> str:
    return f"{server_id}:{target_name}"


def _api_message(error: Optional[ApiError], default: str) -> str:
    if error is None or not error.message:
        return default
    return error.message


def _rejection_message(state: Optional[AuthState]) -> str:
    if state is None:
        return "Authentication failed"
    if state.state == AUTH_REJECTED:
        return "Authentication rejected"
    if state.state == AUTH_NEED and state.methods_remaining:
        return f"Additional authentication required: {', '.join(state.methods_remaining)}"
    return f"Authentication failed ({state.state})"


class SessionBroker:
    """Broker of gateway sessions, targets and SSH credentials.

    The broker reads and mutates the configuration held by ``config_store``;
    server entries are plain dicts inside its live ``servers`` list. Every
    mutation addresses one entry by index (or appends/deletes one entry) and
    is followed by exactly one ``save()``. No mutation suspends between
    looking the entry up and saving, so concurrent callers updating the same
    server resolve as last-writer-wins.

    Args:
        config_store: Persisted configuration collaborator.
        notifications: Optional sink for operator-facing messages.
        otp_prompter: Optional collaborator asked for OTP codes when a
            server requires one and has no stored TOTP secret.
        client_factory: Callable building a ``GatewayApiClient`` from
            ``(url, trust_self_signed=..., timeout=...)``.
        test_session_ttl: Seconds a test session is retained for adoption
            by ``add_server``.

    Attributes:
        targets: Stream of ``{server_id: [Target, ...]}``.
        status: Stream of ``{server_id: ConnectionStatus}``.
        events: Stream of the latest ``BrokerEvent``.
        loading: Stream that is True while a connect is in progress.

    Example:
        >>> broker = SessionBroker(YamlConfigStore(default_config_path()))
        >>> await broker.start()
        >>> server = await broker.add_server({
        ...     "name": "Production",
        ...     "url": "warpgate.example.com",
        ...     "username": "alice",
        ...     "password": "s3cret",
        ...     "enabled": True,
        ... })
        >>> details = await broker.get_full_auth_credentials(server["id"], "db-01")
        >>> await broker.destroy()
    """

    def __init__(
        self,
        config_store: ConfigStore,
        notifications: Optional[NotificationSink] = None,
        otp_prompter: Optional[OtpPrompter] = None,
        *,
        client_factory: Callable[..., GatewayApiClient] = GatewayApiClient,
        test_session_ttl: float = DEFAULT_TEST_SESSION_TTL,
    ) -> None:
        self.config_store = config_store
        self.notifications = notifications
        self.otp_prompter = otp_prompter
        self.client_factory = client_factory
        self.test_session_ttl = test_session_ttl

        self.clients: Dict[str, GatewayApiClient] = {}
        self.sessions: Dict[str, Session] = {}
        self.test_clients: Dict[str, GatewayApiClient] = {}
        self.test_client_timers: Dict[str, asyncio.TimerHandle] = {}
        self.ticket_cache = TicketCache()
        self.connection_status: Dict[str, ConnectionStatus] = {}

        self.targets: ValueStream[Dict[str, List[Target]]] = ValueStream({})
        self.status: ValueStream[Dict[str, ConnectionStatus]] = ValueStream({})
        self.events: ValueStream[Optional[BrokerEvent]] = ValueStream(None)
        self.loading: ValueStream[bool] = ValueStream(False)

        self._refresh_task: Optional["asyncio.Task[None]"] = None
        self._connects_in_progress = 0

        apply_defaults(self.config_store.get())
        set_debug_mode(bool(self.get_config().get("debug_mode")))

    # lifecycle

    async def start(self) -> None:
        """Create clients for enabled servers, arm auto-refresh and connect."""
        for server in self.get_servers():
            if server.get("enabled"):
                self._create_client(server)
        self._start_auto_refresh()
        await self.connect_all()

    async def destroy(self) -> None:
        """Cancel timers, log out of every session and clear all state.

        Logout failures are ignored.
        """
        self._stop_auto_refresh()
        for key in list(self.test_client_timers):
            self._cancel_test_timer(key)

        ids = [server_id for server_id, client in self.clients.items() if client.has_session()]
        for server_id, result in zip(
            ids,
            await asyncio.gather(*(self.clients[i].logout() for i in ids), return_exceptions=True),
        ):
            if isinstance(result, BaseException):
                logger.debug(f"logout of {server_id=} failed: {error_message(result)}")

        self.clients.clear()
        self.sessions.clear()
        self.test_clients.clear()
        self.ticket_cache.clear()
        self.connection_status.clear()
        self.targets.publish({})
        self.status.publish({})

    # configuration

    def get_config(self) -> Dict[str, Any]:
        return self.config_store.get()

    def save_config(self, partial: Dict[str, Any]) -> None:
        """Merge top-level settings into the configuration and persist it.

        Not for the ``servers`` list; use the server mutation operations.
        """
        self.config_store.set(partial)
        self.config_store.save()
        if "debug_mode" in partial:
            set_debug_mode(bool(partial["debug_mode"]))

    def get_servers(self) -> List[ServerConfig]:
        config = self.get_config()
        if config.get("servers") is None:
            config["servers"] = []
        return config["servers"]

    def get_server(self, server_id: str) -> Optional[ServerConfig]:
        for server in self.get_servers():
            if server.get("id") == server_id:
                return server
        return None

    def _server_index(self, server_id: str) -> int:
        for index, server in enumerate(self.get_servers()):
            if server.get("id") == server_id:
                return index
        return -1

    def _require_server(self, server_id: str) -> ServerConfig:
        server = self.get_server(server_id)
        if server is None:
            raise ServerNotFound(f"Server {server_id} not found")
        return server

    def _request_timeout(self) -> float:
        return float(self.get_config().get("request_timeout") or DEFAULT_TIMEOUT)

    async def add_server(self, server: Dict[str, Any]) -> ServerConfig:
        """Append a new server, persist it and connect it when enabled.

        A retained test session for the same URL and username is adopted, so
        the connect reuses it instead of logging in again.

        Returns:
            The stored server entry, with its generated ``id``.
        """
        entry: ServerConfig = dict(server)  # type: ignore[assignment]
        entry["id"] = generate_id()
        entry.setdefault("enabled", True)

        self.get_servers().append(entry)
        self.config_store.save()
        logger.info(f"added server {entry['id']} ({entry.get('name')})")

        self._adopt_test_session(entry)
        self._emit(EVENT_SERVER_ADDED, entry["id"], data=entry)

        if entry.get("enabled"):
            if entry["id"] not in self.clients:
                self._create_client(entry)
            await self.connect(entry["id"])
        return entry

    async def update_server(self, server_id: str, updates: Dict[str, Any]) -> ServerConfig:
        """Apply ``updates`` to one server entry in place and persist it.

        Changing the URL, username, password or TLS trust logs the old session
        out, drops the server's client, session and cached tickets and
        reconnects it when enabled.
        Toggling ``enabled`` connects or disconnects the server.

        Raises:
            ServerNotFound: If no server has ``server_id``.
        """
        servers = self.get_servers()
        index = self._server_index(server_id)
        if index == -1:
            raise ServerNotFound(f"Server {server_id} not found")

        updates = {key: value for key, value in updates.items() if key != "id"}
        current = servers[index]
        credentials_changed = any(
            field in updates and current.get(field) != updates[field]
            for field in CREDENTIAL_FIELDS
        )
        enabled_changed = "enabled" in updates and bool(current.get("enabled")) != bool(
            updates["enabled"]
        )
        current.update(updates)  # type: ignore[typeddict-item]
        self.config_store.save()
        self._emit(EVENT_SERVER_UPDATED, server_id, data=current)

        if credentials_changed:
            logger.info(f"credentials of {server_id} changed, dropping session")
            await self.disconnect(server_id)
            self._drop_server_state(server_id)
            if current.get("enabled"):
                self._create_client(current)
                await self.connect(server_id)
        elif enabled_changed:
            if current.get("enabled"):
                await self.connect(server_id)
            else:
                await self.disconnect(server_id)
        return current

    def remove_server(self, server_id: str) -> None:
        """Delete one server entry, its pinned targets and its in-memory state.

        An unknown ``server_id`` is ignored.
        """
        servers = self.get_servers()
        index = self._server_index(server_id)
        if index == -1:
            logger.debug(f"remove_server: no server {server_id}")
            return

        del servers[index]
        pinned = self._pinned()
        pinned[:] = [key for key in pinned if not str(key).startswith(f"{server_id}:")]
        self.config_store.save()
        logger.info(f"removed server {server_id}")

        self._drop_server_state(server_id)
        self.connection_status.pop(server_id, None)
        if server_id in self.targets.value:
            targets = dict(self.targets.value)
            del targets[server_id]
            self.targets.publish(targets)
        self._publish_status()
        self._emit(EVENT_SERVER_REMOVED, server_id)

    def _touch_last_connected(self, server_id: str) -> None:
        index = self._server_index(server_id)
        if index == -1:
            return
        self.get_servers()[index]["last_connected"] = utcnow().isoformat()
        self.config_store.save()

    # clients

    def _create_client(self, server: ServerConfig) -> GatewayApiClient:
        client = self.client_factory(
            server["url"],
            trust_self_signed=bool(server.get("trust_self_signed", False)),
            timeout=self._request_timeout(),
        )
        self.clients[server["id"]] = client
        return client

    def _client_for(self, server: ServerConfig) -> GatewayApiClient:
        client = self.clients.get(server["id"])
        if client is None:
            client = self._create_client(server)
        return client

    def _drop_server_state(self, server_id: str) -> None:
        self.clients.pop(server_id, None)
        self.sessions.pop(server_id, None)
        self.ticket_cache.clear_server(server_id)

    # authentication

    async def _resolve_otp(
        self, server_name: str, otp_secret: Optional[str], allow_prompt: bool
    ) -> Optional[str]:
        if otp_secret:
            if totp.is_valid_secret(otp_secret):
                return totp.generate(otp_secret)
            logger.warning(f"stored OTP secret for {server_name} is invalid, ignoring it")
        if allow_prompt and self.otp_prompter is not None:
            return await self.otp_prompter.prompt(server_name)
        return None

    async def _authenticate(
        self,
        client: GatewayApiClient,
        username: str,
        password: Optional[str],
        server_name: str,
        otp_secret: Optional[str] = None,
        otp_code: Optional[str] = None,
        allow_prompt: bool = True,
        on_otp_pending: Optional[Callable[[], None]] = None,
    ) -> AuthOutcome:
        """Log in with a password and complete the OTP step if required.

        The OTP code is taken from ``otp_code``, else generated from
        ``otp_secret``, else asked of the prompter when ``allow_prompt`` is
        set.
        """
        if not password:
            return AuthOutcome(False, "No password configured")

        result = await client.login(username, password)
        if not result.success:
            return AuthOutcome(False, _api_message(result.error, "Authentication failed"))
        state: Optional[AuthState] = result.data

        if state is not None and state.needs_otp:
            if on_otp_pending is not None:
                on_otp_pending()
            code = otp_code or await self._resolve_otp(server_name, otp_secret, allow_prompt)
            if not code:
                return AuthOutcome(False, "OTP required but not provided", needs_otp=True)
            otp_result = await client.submit_otp(code)
            if not otp_result.success:
                message = _api_message(otp_result.error, "Invalid code")
                return AuthOutcome(False, f"OTP verification failed: {message}")
            state = otp_result.data
            if state is not None and not state.accepted:
                return AuthOutcome(False, f"OTP verification failed: {_rejection_message(state)}")

        if state is None or not state.accepted:
            return AuthOutcome(False, _rejection_message(state))
        return AuthOutcome(True)

    async def _resume_session(self, server_id: str, client: GatewayApiClient) -> bool:
        session = self.sessions.get(server_id)
        if session is None or session.is_expired(utcnow()):
            return False

        client.set_session_cookie(session.cookie)
        result = await client.get_auth_state()
        if result.success and (result.data is None or result.data.accepted):
            if client.session_cookie and client.session_cookie != session.cookie:
                self.sessions[server_id] = session._replace(cookie=client.session_cookie)
            return True

        logger.debug(f"session of {server_id} is no longer valid, logging in again")
        self.sessions.pop(server_id, None)
        return False

    # connection state machine

    async def connect(self, server_id: str) -> bool:
        """Authenticate against one server and load its targets.

        Returns:
            True when the server ends up connected. Failures are recorded in
            the connection status and notified; they are not raised.

        Raises:
            ServerNotFound: If no server has ``server_id``.
        """
        server = self._require_server(server_id)
        name = server.get("name") or server_id
        client = self._client_for(server)

        self._set_loading(1)
        self._set_status(server_id, STATE_AUTHENTICATING)
        try:
            if await self._resume_session(server_id, client):
                await self.refresh_targets(server_id)
                self._set_status(server_id, STATE_CONNECTED, connected=True)
                self._notify("info", f"Connected to {name}")
                return True

            outcome = await self._authenticate(
                client,
                server.get("username", ""),
                server.get("password"),
                name,
                otp_secret=server.get("otp_secret"),
                on_otp_pending=lambda: self._set_status(server_id, STATE_OTP_PENDING),
            )
            if not outcome.success:
                self._set_status(server_id, STATE_FAILED, error=outcome.error)
                if outcome.needs_otp:
                    self._emit(EVENT_OTP_REQUIRED, server_id, error=outcome.error)
                    self._notify("notice", f"OTP required for {name}")
                else:
                    self._notify("error", f"Failed to connect to {name}: {outcome.error}")
                return False

            self.sessions[server_id] = Session(
                server_id=server_id,
                cookie=client.session_cookie or "",
                expires_at=utcnow() + SESSION_LIFETIME,
                username=server.get("username", ""),
            )
            self._touch_last_connected(server_id)
            await self.refresh_targets(server_id)
            self._set_status(server_id, STATE_CONNECTED, connected=True)
            self._notify("info", f"Connected to {name}")
            return True
        except Exception as e:
            message = error_message(e)
            logger.error(f"connect {server_id} failed: {type(e).__name__}: {message}")
            self._set_status(server_id, STATE_FAILED, error=message)
            self._emit(EVENT_ERROR, server_id, error=message)
            self._notify("error", f"Error connecting to {name}: {message}")
            return False
        finally:
            self._set_loading(-1)

    async def disconnect(self, server_id: str) -> None:
        """Log out of a server (best effort) and forget its session."""
        client = self.clients.get(server_id)
        if client is not None and client.has_session():
            try:
                await client.logout()
            except Exception as e:
                logger.debug(f"logout of {server_id} failed: {error_message(e)}")
        self.sessions.pop(server_id, None)
        self._set_status(server_id, STATE_DISCONNECTED)

    async def connect_all(self) -> None:
        """Connect every enabled server concurrently."""
        ids = [server["id"] for server in self.get_servers() if server.get("enabled")]
        results = await asyncio.gather(*(self.connect(i) for i in ids), return_exceptions=True)
        for server_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(f"connect {server_id} raised {type(result).__name__}: {result}")
                self._set_status(server_id, STATE_FAILED, error=error_message(result))

    async def disconnect_all(self) -> None:
        ids = list(self.clients)
        await asyncio.gather(*(self.disconnect(i) for i in ids), return_exceptions=True)

    # test connections

    def _arm_test_timer(self, key: str) -> None:
        self._cancel_test_timer(key)
        loop = asyncio.get_running_loop()
        self.test_client_timers[key] = loop.call_later(
            self.test_session_ttl, self._expire_test_session, key
        )

    def _cancel_test_timer(self, key: str) -> None:
        handle = self.test_client_timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _expire_test_session(self, key: str) -> None:
        self.test_client_timers.pop(key, None)
        if self.test_clients.pop(key, None) is not None:
            logger.debug(f"test session {key} expired unclaimed")

    def _discard_test_session(self, key: str) -> None:
        self._cancel_test_timer(key)
        self.test_clients.pop(key, None)

    def _adopt_test_session(self, server: ServerConfig) -> bool:
        key = pending_session_key(server.get("url", ""), server.get("username", ""))
        test_client = self.test_clients.pop(key, None)
        self._cancel_test_timer(key)
        if test_client is None or not test_client.has_session():
            return False

        client = self._create_client(server)
        client.set_session_cookie(test_client.session_cookie)
        self.sessions[server["id"]] = Session(
            server_id=server["id"],
            cookie=test_client.session_cookie or "",
            expires_at=utcnow() + SESSION_LIFETIME,
            username=server.get("username", ""),
        )
        logger.info(f"adopted test session {key} for {server['id']}")
        return True

    async def test_server_connection(
        self,
        url: str,
        username: str,
        password: str,
        trust_self_signed: bool = False,
        otp_code: Optional[str] = None,
        otp_secret: Optional[str] = None,
    ) -> ConnectionTestResult:
        """Validate gateway credentials before the server is saved.

        On success the session is kept for ``test_session_ttl`` seconds so a
        following ``add_server`` for the same URL and username can adopt it.
        The OTP step uses ``otp_code`` when given, else a code generated from
        ``otp_secret``. When neither is available the result has ``needs_otp``
        set and the pending client is kept for ``submit_test_otp``. The
        operator is never prompted here.
        """
        key = pending_session_key(url, username)
        self._discard_test_session(key)
        client = self.client_factory(
            url, trust_self_signed=trust_self_signed, timeout=self._request_timeout()
        )
        self.test_clients[key] = client

        try:
            outcome = await self._authenticate(
                client,
                username,
                password,
                url,
                otp_secret=otp_secret,
                otp_code=otp_code,
                allow_prompt=False,
            )
        except Exception as e:
            self._discard_test_session(key)
            return ConnectionTestResult(False, error=error_message(e))

        if outcome.needs_otp:
            self._arm_test_timer(key)
            return ConnectionTestResult(False, error=outcome.error, needs_otp=True)
        if not outcome.success:
            self._discard_test_session(key)
            return ConnectionTestResult(False, error=outcome.error)

        self._arm_test_timer(key)
        return ConnectionTestResult(True, session_cookie=client.session_cookie)

    async def submit_test_otp(self, url: str, username: str, otp_code: str) -> ConnectionTestResult:
        """Complete a pending test connection with an OTP code."""
        key = pending_session_key(url, username)
        client = self.test_clients.get(key)
        if client is None:
            return ConnectionTestResult(False, error="No pending test connection")

        result = await client.submit_otp(otp_code)
        if not result.success:
            message = _api_message(result.error, "Invalid code")
            return ConnectionTestResult(
                False, error=f"OTP verification failed: {message}", needs_otp=True
            )
        state: Optional[AuthState] = result.data
        if state is not None and not state.accepted:
            return ConnectionTestResult(
                False,
                error=f"OTP verification failed: {_rejection_message(state)}",
                needs_otp=state.needs_otp,
            )

        self._arm_test_timer(key)
        return ConnectionTestResult(True, session_cookie=client.session_cookie)

    # targets and status

    async def refresh_targets(self, server_id: str) -> List[Target]:
        """Fetch the SSH targets of one server and publish them.

        A failed fetch returns an empty list and is recorded as the status
        error; the previously published targets are kept.

        Raises:
            ServerNotFound: If no server has ``server_id``.
        """
        server = self._require_server(server_id)
        client = self._client_for(server)

        result = await client.get_ssh_targets()
        status = self.connection_status.get(server_id)
        if not result.success:
            message = _api_message(result.error, "Failed to load targets")
            logger.warning(f"refresh targets of {server_id} failed: {message}")
            if status is not None:
                status.last_error = message
                self._publish_status()
            return []

        targets: List[Target] = result.data
        published = dict(self.targets.value)
        published[server_id] = targets
        self.targets.publish(published)
        if status is not None:
            status.targets = list(targets)
            self._publish_status()
        self._emit(EVENT_TARGETS_UPDATED, server_id, data=targets)
        return targets

    async def refresh_all_targets(self) -> None:
        """Refresh targets of every connected server concurrently."""
        ids = [i for i, status in self.connection_status.items() if status.connected]
        results = await asyncio.gather(*(self.refresh_targets(i) for i in ids), return_exceptions=True)
        for server_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(f"refresh {server_id} raised {type(result).__name__}: {result}")
                status = self.connection_status.get(server_id)
                if status is not None:
                    status.last_error = error_message(result)
        self._publish_status()

    def get_all_targets(self) -> List[Tuple[ServerConfig, Target]]:
        result = []
        for server_id, targets in self.targets.value.items():
            server = self.get_server(server_id)
            if server is None:
                continue
            for target in targets:
                result.append((server, target))
        return result

    def get_server_targets(self, server_id: str) -> List[Target]:
        return list(self.targets.value.get(server_id, []))

    def is_connected(self, server_id: str) -> bool:
        status = self.connection_status.get(server_id)
        return status is not None and status.connected

    def get_connection_status(self, server_id: str) -> Optional[ConnectionStatus]:
        return self.connection_status.get(server_id)

    def _set_status(
        self,
        server_id: str,
        state: str,
        connected: bool = False,
        error: Optional[str] = None,
    ) -> None:
        current = self.connection_status.get(server_id)
        status = ConnectionStatus(
            server_id=server_id,
            connected=connected,
            state=state,
            last_error=error,
            last_checked=utcnow(),
            targets=list(current.targets) if current is not None else [],
        )
        self.connection_status[server_id] = status
        self._publish_status()
        self._emit(EVENT_CONNECTION_CHANGED, server_id, data=status, error=error)

    def _publish_status(self) -> None:
        self.status.publish(dict(self.connection_status))

    def _set_loading(self, delta: int) -> None:
        self._connects_in_progress = max(0, self._connects_in_progress + delta)
        loading = self._connects_in_progress > 0
        if loading != self.loading.value:
            self.loading.publish(loading)

    def _emit(
        self,
        event_type: str,
        server_id: Optional[str] = None,
        data: Any = None,
        error: Optional[str] = None,
    ) -> None:
        self.events.publish(BrokerEvent(event_type, server_id, data, error))

    def _notify(self, level: str, message: str) -> None:
        if self.notifications is None:
            return
        if level == "error":
            self.notifications.error(message)
        elif level == "notice":
            self.notifications.notice(message)
        else:
            self.notifications.info(message)

    # tickets and credentials

    def _ticket_details(self, client: GatewayApiClient, secret: str) -> ConnectionDetails:
        return ConnectionDetails(
            host=client.get_ssh_host(),
            port=client.get_ssh_port(),
            username=client.generate_ticket_username(secret),
            use_ticket=True,
        )

    def _password_details(
        self, server: ServerConfig, client: GatewayApiClient, target_name: str
    ) -> ConnectionDetails:
        return ConnectionDetails(
            host=client.get_ssh_host(),
            port=client.get_ssh_port(),
            username=f"{server.get('username', '')}:{target_name}",
            password=server.get("password"),
            use_ticket=False,
            otp_code=self.generate_otp_code(server["id"]),
        )

    async def get_or_create_ticket(self, server_id: str, target_name: str) -> ConnectionDetails:
        """Return ticket credentials for a target, issuing a ticket if needed.

        A valid cached ticket is reused. Otherwise a single-use ticket is
        requested from the gateway. If that fails (typically because the user
        lacks admin rights) the operator gets a notice and the returned
        details fall back to ``user:target`` without a ticket.

        Raises:
            ServerNotFound: If no server has ``server_id``.
        """
        server = self._require_server(server_id)
        client = self._client_for(server)

        cached = self.ticket_cache.get(server_id, target_name)
        if cached is not None:
            return self._ticket_details(client, cached.secret)

        fallback = ConnectionDetails(
            host=client.get_ssh_host(),
            port=client.get_ssh_port(),
            username=f"{server.get('username', '')}:{target_name}",
            use_ticket=False,
        )
        request = TicketRequest(
            username=server.get("username", ""),
            target_name=target_name,
            number_of_uses=1,
            description=f"warpgate-broker ticket for {target_name}",
        )
        try:
            result = await client.create_ticket(request)
        except Exception as e:
            logger.warning(f"ticket creation for {target_name} raised {type(e).__name__}: {e}")
            self._notify("notice", f"Ticket creation failed: {error_message(e)}")
            return fallback

        if not result.success:
            message = _api_message(result.error, "unknown error")
            logger.warning(f"ticket creation for {target_name} on {server_id} failed: {message}")
            self._notify(
                "notice", f"Could not create ticket for {target_name}, using password authentication"
            )
            return fallback

        ticket = result.data.ticket
        self.ticket_cache.put(
            CachedTicket(
                server_id=server_id,
                target_name=target_name,
                secret=result.data.secret,
                expires_at=parse_timestamp(ticket.expiry),
                uses_left=ticket.uses_left if ticket.uses_left is not None else 1,
            )
        )
        return self._ticket_details(client, result.data.secret)

    def invalidate_ticket(self, server_id: str, target_name: str) -> None:
        """Record one use of the cached ticket for a target."""
        self.ticket_cache.invalidate(server_id, target_name)

    def clear_server_tickets(self, server_id: str) -> None:
        self.ticket_cache.clear_server(server_id)

    def get_ssh_connection_details(self, server_id: str, target_name: str) -> ConnectionDetails:
        """Resolve credentials for a target from the cache, without network calls.

        A valid cached ticket wins. Otherwise the details carry
        ``user:target``, the stored password and, when a valid TOTP secret is
        stored, a freshly generated code.
        """
        server = self._require_server(server_id)
        client = self._client_for(server)
        cached = self.ticket_cache.get(server_id, target_name)
        if cached is not None:
            return self._ticket_details(client, cached.secret)
        return self._password_details(server, client, target_name)

    async def get_full_auth_credentials(
        self, server_id: str, target_name: str, allow_ticket: bool = True
    ) -> ConnectionDetails:
        """Resolve credentials for a target, issuing a ticket when allowed.

        Recomputed on every call: TOTP codes are single-use and time-bound.
        """
        server = self._require_server(server_id)
        if allow_ticket:
            details = await self.get_or_create_ticket(server_id, target_name)
            if details.use_ticket:
                return details
        return self._password_details(server, self._client_for(server), target_name)

    # OTP secrets

    def has_otp_secret(self, server_id: str) -> bool:
        server = self.get_server(server_id)
        return server is not None and totp.is_valid_secret(server.get("otp_secret"))

    def generate_otp_code(self, server_id: str) -> Optional[str]:
        """Return the current TOTP code of a server, or None without a valid secret."""
        server = self._require_server(server_id)
        secret = server.get("otp_secret")
        if not totp.is_valid_secret(secret):
            return None
        return totp.generate(secret)

    def set_otp_secret(self, server_id: str, secret: Optional[str]) -> None:
        """Store (or with an empty value, remove) a server's TOTP secret.

        Raises:
            ServerNotFound: If no server has ``server_id``.
            InvalidSecretFormat: If the secret is not valid Base32 of at
                least 80 bits.
        """
        if secret and not totp.is_valid_secret(secret):
            raise InvalidSecretFormat("Invalid TOTP secret format")
        index = self._server_index(server_id)
        if index == -1:
            raise ServerNotFound(f"Server {server_id} not found")

        server = self.get_servers()[index]
        if secret:
            server["otp_secret"] = base32.clean(secret)
        else:
            server.pop("otp_secret", None)
        self.config_store.save()
        self._emit(EVENT_SERVER_UPDATED, server_id, data=server)

    async def enroll_otp(self, server_id: str) -> bool:
        """Register a new TOTP secret with the gateway and store it.

        The server must be connected. Returns False, with an error
        notification, when enrollment fails.
        """
        server = self._require_server(server_id)
        name = server.get("name") or server_id
        client = self.clients.get(server_id)
        if client is None or server_id not in self.sessions:
            self._notify("error", f"Connect to {name} before enrolling OTP")
            return False

        secret = totp.generate_secret()
        result = await client.enable_profile_otp(base32.decode(secret))
        if not result.success:
            message = _api_message(result.error, "unknown error")
            logger.warning(f"OTP enrollment on {server_id} failed: {message}")
            self._notify("error", f"OTP enrollment failed for {name}: {message}")
            return False

        index = self._server_index(server_id)
        if index == -1:
            return False
        self.get_servers()[index]["otp_secret"] = secret
        self.config_store.save()
        self._emit(EVENT_SERVER_UPDATED, server_id, data=self.get_servers()[index])
        self._notify("info", f"OTP enrolled for {name}")
        return True

    # pinned hosts

    def _pinned(self) -> List[str]:
        config = self.get_config()
        if config.get("pinned_hosts") is None:
            config["pinned_hosts"] = []
        return config["pinned_hosts"]

    def get_pinned_hosts(self) -> List[Tuple[str, str]]:
        """Return the pinned ``(server_id, target_name)`` pairs in pin order."""
        pairs = []
        for key in self._pinned():
            server_id, sep, target_name = str(key).partition(":")
            if sep:
                pairs.append((server_id, target_name))
        return pairs

    def is_pinned(self, server_id: str, target_name: str) -> bool:
        return pinned_host_key(server_id, target_name) in self._pinned()

    def pin_host(self, server_id: str, target_name: str) -> None:
        """Pin a target so front ends list it first. Pinning twice is a no-op.

        Raises:
            ServerNotFound: If no server has ``server_id``.
        """
        self._require_server(server_id)
        key = pinned_host_key(server_id, target_name)
        pinned = self._pinned()
        if key in pinned:
            return
        pinned.append(key)
        self.config_store.save()
        logger.debug(f"pinned {key}")

    def unpin_host(self, server_id: str, target_name: str) -> None:
        key = pinned_host_key(server_id, target_name)
        pinned = self._pinned()
        if key not in pinned:
            return
        pinned.remove(key)
        self.config_store.save()
        logger.debug(f"unpinned {key}")

    # auto-refresh

    def update_auto_refresh_interval(self, seconds: float) -> None:
        """Persist a new refresh interval and re-arm the refresh loop; 0 disables it."""
        self.save_config({"auto_refresh_interval": seconds})
        self._start_auto_refresh()

    def _start_auto_refresh(self) -> None:
        self._stop_auto_refresh()
        interval = self.get_config().get("auto_refresh_interval") or 0
        if interval > 0:
            self._refresh_task = asyncio.get_running_loop().create_task(
                self._auto_refresh_loop(float(interval))
            )

    def _stop_auto_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None

    async def _auto_refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            logger.debug("auto-refreshing targets")
            await self.refresh_all_targets()
