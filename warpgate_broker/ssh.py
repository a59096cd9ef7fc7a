"""SSH connections to gateway targets.

This module connects an asyncssh client to a target behind a Warpgate
gateway using the credentials resolved by the broker. With a ticket the
username alone authenticates. Without one the gateway asks for the password
and, when the account has a second factor, an OTP code through
keyboard-interactive prompts; ``PromptAnswerer`` answers those from the
stored password and TOTP secret.

Key Features:
- Classification of keyboard-interactive prompts (password or OTP)
- Single-use handling of the pre-generated OTP code, fresh codes afterwards
- ``auth_method`` setting honored (ticket, password or auto)
- Ticket use recorded after each connection attempt
- SFTP sessions over the same connection path
"""

import logging
import re
from typing import Any, Callable, List, Optional, Sequence, Tuple

import asyncssh
from asyncssh.connection import SSHClientConnection
from asyncssh.sftp import SFTPClient

from .broker import SessionBroker
from .config import AUTH_METHOD_AUTO, AUTH_METHOD_PASSWORD, AUTH_METHOD_TICKET

logger = logging.getLogger("warpgate_broker.ssh")

OTP_PROMPT = re.compile(
    r"one[- ]?time|\botp\b|\b2fa\b|two[- ]?factor|verification code|authenticator"
    r"|\btotp\b|\btoken\b|security code",
    re.IGNORECASE,
)
PASSWORD_PROMPT = re.compile(r"password|passphrase", re.IGNORECASE)


def is_otp_prompt(prompt: str) -> bool:
    """Check whether a keyboard-interactive prompt asks for a one-time code.

    Example:
        >>> is_otp_prompt("One-time password: ")
        True
        >>> is_otp_prompt("Password: ")
        False
    """
    return bool(OTP_PROMPT.search(prompt))


def is_password_prompt(prompt: str) -> bool:
    return not is_otp_prompt(prompt) and bool(PASSWORD_PROMPT.search(prompt))


class PromptAnswerer:
    """Answers gateway authentication prompts.

    Args:
        password: Password for password prompts.
        otp_code: Code generated before connecting; used for the first OTP
            prompt only.
        otp_source: Callable producing a fresh code for later OTP prompts.
    """

    def __init__(
        self,
        password: Optional[str],
        otp_code: Optional[str] = None,
        otp_source: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.password = password
        self._otp_code = otp_code
        self.otp_source = otp_source

    def answer_prompt(self, prompt: str) -> Optional[str]:
        """Return the answer to a prompt, or None when it cannot be answered."""
        if is_otp_prompt(prompt):
            if self._otp_code is not None:
                code, self._otp_code = self._otp_code, None
                return code
            if self.otp_source is not None:
                return self.otp_source()
            return None
        if is_password_prompt(prompt):
            return self.password
        return None


class GatewaySSHClient(asyncssh.SSHClient):
    """asyncssh client answering password and keyboard-interactive auth."""

    def __init__(self, answerer: PromptAnswerer) -> None:
        self.answerer = answerer
        self._password_sent = False

    def password_auth_requested(self) -> Optional[str]:
        if self._password_sent or self.answerer.password is None:
            return None
        self._password_sent = True
        return self.answerer.password

    def kbdint_auth_requested(self) -> Optional[str]:
        return ""

    def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: Sequence[Tuple[str, bool]],
    ) -> Optional[List[str]]:
        answers = []
        for prompt, _echo in prompts:
            answer = self.answerer.answer_prompt(prompt)
            if answer is None:
                logger.warning(f"no answer for keyboard-interactive prompt {prompt!r}")
                return None
            answers.append(answer)
        return answers


async def connect_target(
    broker: SessionBroker, server_id: str, target_name: str, **connect_options: Any
) -> SSHClientConnection:
    """Open an SSH connection to a target through its gateway.

    With ``auth_method`` ``auto`` or ``ticket`` a ticket is obtained first;
    with ``password`` (or when no ticket can be issued) the connection uses
    ``user:target`` with the stored password and TOTP secret.

    Args:
        broker: Broker holding the server configuration and sessions.
        server_id: Server the target belongs to.
        target_name: Target to connect to.
        **connect_options: Extra keyword arguments for ``asyncssh.connect``.

    Returns:
        The established connection.

    Raises:
        ServerNotFound: If no server has ``server_id``.
        asyncssh.Error: If the SSH connection or authentication fails.
        OSError: If the gateway cannot be reached.
    """
    method = broker.get_config().get("auth_method") or AUTH_METHOD_AUTO
    details = await broker.get_full_auth_credentials(
        server_id, target_name, allow_ticket=method != AUTH_METHOD_PASSWORD
    )
    if method == AUTH_METHOD_TICKET and not details.use_ticket:
        logger.warning(f"no ticket for {target_name}, falling back to password authentication")

    answerer = PromptAnswerer(
        details.password,
        details.otp_code,
        otp_source=lambda: broker.generate_otp_code(server_id),
    )
    logger.info(
        f"connect_target {details.host=} {details.port=} {target_name=} {details.use_ticket=}"
    )
    try:
        return await asyncssh.connect(
            details.host,
            port=details.port,
            username=details.username,
            known_hosts=None,
            client_factory=lambda: GatewaySSHClient(answerer),
            **connect_options,
        )
    finally:
        if details.use_ticket:
            broker.invalidate_ticket(server_id, target_name)


async def open_sftp(
    broker: SessionBroker, server_id: str, target_name: str, **connect_options: Any
) -> Tuple[SSHClientConnection, SFTPClient]:
    """Open an SFTP session on a target through its gateway.

    The SSH connection is made by ``connect_target``, so ticket use and the
    password fallback are the same as for shell access. The caller closes
    both the SFTP client and the connection.

    Raises:
        ServerNotFound: If no server has ``server_id``.
        asyncssh.Error: If the connection fails or the target refuses the
            SFTP subsystem.
    """
    conn = await connect_target(broker, server_id, target_name, **connect_options)
    try:
        sftp = await conn.start_sftp_client()
    except BaseException:
        conn.close()
        raise
    logger.info(f"open_sftp {server_id=} {target_name=}")
    return conn, sftp
