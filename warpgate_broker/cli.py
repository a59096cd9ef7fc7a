"""Command-line interface for the Warpgate session broker.

This module provides a command-line front end to ``SessionBroker``: manage
the configured gateways, validate credentials, list targets, issue tickets,
show TOTP codes, pin targets and run commands on targets over SSH.

Servers are referred to by id or by name. Passwords not given with
``--password`` are asked for on the terminal, as are OTP codes the gateway
requires when the server has no stored TOTP secret.

Usage Patterns:
- List servers: warpgate-broker servers
- Add a server: warpgate-broker add prod warpgate.example.com alice
- Check credentials: warpgate-broker test warpgate.example.com alice
- Run a command: warpgate-broker ssh prod db-01 -- uptime
- Browse files: warpgate-broker sftp prod db-01 /var/log

Usage:
    warpgate-broker [options] servers
    warpgate-broker [options] add <name> <url> <username>
    warpgate-broker [options] remove <server>
    warpgate-broker [options] test <url> <username>
    warpgate-broker [options] targets [<server>]
    warpgate-broker [options] ticket <server> <target>
    warpgate-broker [options] totp [<server>]
    warpgate-broker [options] ssh <server> <target> [--] <command>...
    warpgate-broker [options] sftp <server> <target> [<path>]
    warpgate-broker [options] pin <server> <target>
    warpgate-broker [options] unpin <server> <target>

Options:
    -h, --help                  Show this page
    -c=<c>, --config=<c>        Config file
    -p=<p>, --password=<p>      Gateway password
    --otp=<code>                OTP code for test connections
    --otp-secret=<s>            Base32 TOTP secret for a new server or a test
    --trust-self-signed         Skip TLS certificate verification
    --disabled                  Add the server without connecting to it
    --generate-secret           Print a new random TOTP secret
    --enroll                    Register a new TOTP secret with the gateway
    --debug                     Show debug logging
    --verbose                   Show verbose logging
"""
import asyncio
import logging
import sys
from getpass import getpass
from typing import Any, Dict, List, Optional

import yaml
from docopt import docopt

from . import totp
from .api import GatewayApiClient
from .broker import SessionBroker
from .config import YamlConfigStore, default_config_path
from .exceptions import BrokerError
from .ssh import connect_target, open_sftp
from .types import ServerConfig
from .util import set_debug_mode

logger = logging.getLogger("warpgate_broker.cli")


class ConsoleNotifications:
    """Notification sink writing to stderr."""

    def info(self, message: str) -> None:
        print(message, file=sys.stderr)

    def notice(self, message: str) -> None:
        print(f"notice: {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        print(f"error: {message}", file=sys.stderr)


class ConsoleOtpPrompter:
    """OTP prompter reading the code from the terminal."""

    async def prompt(self, server_name: str) -> Optional[str]:
        try:
            code = await asyncio.to_thread(getpass, f"OTP code for {server_name}: ")
        except EOFError:
            return None
        return code.strip() or None


def find_server(broker: SessionBroker, reference: str) -> Optional[ServerConfig]:
    """Look a server up by id, then by case-insensitive name."""
    server = broker.get_server(reference)
    if server is not None:
        return server
    for candidate in broker.get_servers():
        if str(candidate.get("name", "")).lower() == reference.lower():
            return candidate
    return None


def read_password(parsed_args: Dict[str, Any], prompt: str) -> str:
    if parsed_args["--password"] is not None:
        return parsed_args["--password"]
    return getpass(prompt)   # pragma: no cover


def print_servers(servers: List[ServerConfig]) -> None:
    for server in servers:
        flags = []
        if not server.get("enabled"):
            flags.append("disabled")
        if server.get("otp_secret"):
            flags.append("totp")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{server['id']}  {server.get('name', '')}  {server.get('username', '')}@{server.get('url', '')}{suffix}")


async def run_command(broker: SessionBroker, parsed_args: Dict[str, Any]) -> int:
    if parsed_args["servers"]:
        print_servers(broker.get_servers())
        return 0

    if parsed_args["add"]:
        server: Dict[str, Any] = {
            "name": parsed_args["<name>"],
            "url": parsed_args["<url>"],
            "username": parsed_args["<username>"],
            "password": read_password(parsed_args, "Password: "),
            "enabled": not parsed_args["--disabled"],
            "trust_self_signed": parsed_args["--trust-self-signed"],
        }
        if parsed_args["--otp-secret"]:
            if not totp.is_valid_secret(parsed_args["--otp-secret"]):
                print("error: invalid TOTP secret", file=sys.stderr)
                return 1
            server["otp_secret"] = parsed_args["--otp-secret"]
        added = await broker.add_server(server)
        print(added["id"])
        return 0

    if parsed_args["test"]:
        url, username = parsed_args["<url>"], parsed_args["<username>"]
        otp_secret = parsed_args["--otp-secret"]
        if otp_secret and not totp.is_valid_secret(otp_secret):
            print("error: invalid TOTP secret", file=sys.stderr)
            return 1
        result = await broker.test_server_connection(
            url,
            username,
            read_password(parsed_args, "Password: "),
            trust_self_signed=parsed_args["--trust-self-signed"],
            otp_code=parsed_args["--otp"],
            otp_secret=otp_secret,
        )
        if result.needs_otp:
            code = await ConsoleOtpPrompter().prompt(url)
            if code:
                result = await broker.submit_test_otp(url, username, code)
        if result.success:
            print("Connection successful")
            return 0
        print(f"Connection failed: {result.error}", file=sys.stderr)
        return 1

    if parsed_args["totp"] and parsed_args["--generate-secret"]:
        print(totp.generate_secret())
        return 0

    if parsed_args["targets"] and parsed_args["<server>"] is None:
        await broker.connect_all()
        for server, target in broker.get_all_targets():
            print(f"{server.get('name', server['id'])}  {target.name}  {target.description}")
        return 0

    if parsed_args["<server>"] is None:
        print("error: a server is required", file=sys.stderr)
        return 1
    server = find_server(broker, parsed_args["<server>"])
    if server is None:
        print(f"error: no server {parsed_args['<server>']!r}", file=sys.stderr)
        return 1
    server_id = server["id"]

    if parsed_args["remove"]:
        broker.remove_server(server_id)
        return 0

    if parsed_args["pin"]:
        broker.pin_host(server_id, parsed_args["<target>"])
        return 0

    if parsed_args["unpin"]:
        broker.unpin_host(server_id, parsed_args["<target>"])
        return 0

    if parsed_args["totp"]:
        if parsed_args["--enroll"]:
            if not await broker.connect(server_id):
                return 1
            return 0 if await broker.enroll_otp(server_id) else 1
        code = broker.generate_otp_code(server_id)
        if code is None:
            print(f"error: no TOTP secret stored for {server.get('name', server_id)}", file=sys.stderr)
            return 1
        print(f"{code} ({totp.remaining_seconds()}s left)")
        return 0

    if not await broker.connect(server_id):
        return 1

    if parsed_args["targets"]:
        targets = broker.get_server_targets(server_id)
        # pinned targets first, otherwise in gateway order
        targets = sorted(targets, key=lambda t: not broker.is_pinned(server_id, t.name))
        for target in targets:
            print(f"{target.name}  {target.kind}  {target.description}")
        return 0

    if parsed_args["ticket"]:
        target_name = parsed_args["<target>"]
        details = await broker.get_or_create_ticket(server_id, target_name)
        if details.use_ticket:
            print(f"{details.username}@{details.host}:{details.port}")
        else:
            print(
                GatewayApiClient.generate_ssh_connection_string(
                    target_name, server.get("username", ""), details.host, details.port
                )
            )
        return 0

    if parsed_args["ssh"]:
        conn = await connect_target(broker, server_id, parsed_args["<target>"])
        try:
            result = await conn.run(" ".join(parsed_args["<command>"]))
        finally:
            conn.close()
        sys.stdout.write(str(result.stdout or ""))
        sys.stderr.write(str(result.stderr or ""))
        return result.exit_status or 0

    if parsed_args["sftp"]:
        conn, sftp = await open_sftp(broker, server_id, parsed_args["<target>"])
        try:
            names = await sftp.listdir(parsed_args["<path>"] or ".")
        finally:
            sftp.exit()
            conn.close()
        for name in sorted(names):
            if name not in (".", ".."):
                print(name)
        return 0

    return 0   # pragma: no cover


async def main(args: Optional[List[str]] = None) -> int:
    """Parse arguments, build the broker and run one command.

    Args:
        args: Command-line arguments. Defaults to ``sys.argv[1:]``.

    Returns:
        Process exit status.
    """
    if args is None:
        args = sys.argv[1:]   # pragma: no cover
    parsed_args = docopt(__doc__, args)
    if parsed_args["--debug"]:
        logging.basicConfig(level=logging.DEBUG)
    elif parsed_args["--verbose"]:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)

    config_path = parsed_args["--config"] or default_config_path()
    try:
        store = YamlConfigStore(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"error: cannot load {config_path}: {e}", file=sys.stderr)
        return 1

    broker = SessionBroker(store, ConsoleNotifications(), ConsoleOtpPrompter())
    if parsed_args["--debug"]:
        set_debug_mode(True)
    try:
        return await run_command(broker, parsed_args)
    except BrokerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await broker.destroy()


def entry_point() -> None:
    """Console script entry point for ``warpgate-broker``."""
    sys.exit(asyncio.run(main(sys.argv[1:])))   # pragma: no cover
