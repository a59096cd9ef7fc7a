"""
Unit tests for warpgate_broker.cli module.

Commands run through ``main`` against a config file in a temporary
directory. Commands that would reach a gateway patch the broker operation
they call.
"""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

from warpgate_broker import totp
from warpgate_broker.broker import SessionBroker
from warpgate_broker.cli import ConsoleNotifications, ConsoleOtpPrompter, find_server, main
from warpgate_broker.config import MemoryConfigStore
from warpgate_broker.types import ConnectionDetails, ConnectionTestResult, Target

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "config.yml")


async def run(config_path, *args):
    return await main(["-c", config_path, *args])


async def add_disabled(config_path, name="prod", *extra):
    return await run(
        config_path, "add", name, "warpgate.example.com", "alice", "-p", "s3cret", "--disabled", *extra
    )


def load(config_path):
    with open(config_path) as f:
        return yaml.safe_load(f)


class TestLogging:
    """Tests for logging configuration."""

    @pytest.mark.asyncio
    @patch("warpgate_broker.cli.logging.basicConfig")
    async def test_default_level(self, mock_logging, config_path):
        await run(config_path, "servers")
        mock_logging.assert_called_once_with(level=logging.WARNING)

    @pytest.mark.asyncio
    @patch("warpgate_broker.cli.logging.basicConfig")
    async def test_verbose(self, mock_logging, config_path):
        await run(config_path, "--verbose", "servers")
        mock_logging.assert_called_once_with(level=logging.INFO)

    @pytest.mark.asyncio
    @patch("warpgate_broker.cli.logging.basicConfig")
    async def test_debug(self, mock_logging, config_path):
        await run(config_path, "--debug", "servers")
        mock_logging.assert_called_once_with(level=logging.DEBUG)
        assert logging.getLogger("warpgate_broker").level == logging.DEBUG
        logging.getLogger("warpgate_broker").setLevel(logging.NOTSET)


class TestArguments:
    """Tests for argument parsing."""

    @pytest.mark.asyncio
    async def test_help_exits(self):
        with pytest.raises(SystemExit):
            await main(["--help"])

    @pytest.mark.asyncio
    async def test_unknown_command_exits(self):
        with pytest.raises(SystemExit):
            await main(["frobnicate"])


class TestServerCommands:
    """Tests for servers, add and remove."""

    @pytest.mark.asyncio
    async def test_empty_list(self, config_path, capsys):
        assert await run(config_path, "servers") == 0
        assert capsys.readouterr().out == ""

    @pytest.mark.asyncio
    async def test_add_disabled(self, config_path, capsys):
        assert await add_disabled(config_path) == 0

        server_id = capsys.readouterr().out.strip()
        servers = load(config_path)["servers"]
        assert servers == [
            {
                "id": server_id,
                "name": "prod",
                "url": "warpgate.example.com",
                "username": "alice",
                "password": "s3cret",
                "enabled": False,
                "trust_self_signed": False,
            }
        ]

    @pytest.mark.asyncio
    async def test_add_with_secret_then_list(self, config_path, capsys):
        await add_disabled(config_path, "prod", "--otp-secret", RFC_SECRET)
        server_id = capsys.readouterr().out.strip()

        assert await run(config_path, "servers") == 0

        out = capsys.readouterr().out
        assert out == f"{server_id}  prod  alice@warpgate.example.com [disabled, totp]\n"

    @pytest.mark.asyncio
    async def test_add_rejects_bad_secret(self, config_path, capsys):
        assert await add_disabled(config_path, "prod", "--otp-secret", "nope") == 1
        assert "invalid TOTP secret" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_remove_by_name(self, config_path):
        await add_disabled(config_path, "prod")
        await add_disabled(config_path, "staging")

        assert await run(config_path, "remove", "PROD") == 0

        assert [s["name"] for s in load(config_path)["servers"]] == ["staging"]

    @pytest.mark.asyncio
    async def test_remove_unknown(self, config_path, capsys):
        assert await run(config_path, "remove", "nothere") == 1
        assert "no server 'nothere'" in capsys.readouterr().err


class TestTotpCommand:
    """Tests for the totp command."""

    @pytest.mark.asyncio
    async def test_generate_secret(self, config_path, capsys):
        assert await run(config_path, "totp", "--generate-secret") == 0
        assert totp.is_valid_secret(capsys.readouterr().out.strip())

    @pytest.mark.asyncio
    async def test_current_code(self, config_path, capsys):
        await add_disabled(config_path, "prod", "--otp-secret", RFC_SECRET)
        capsys.readouterr()

        with patch("warpgate_broker.totp.time.time", return_value=59.0):
            assert await run(config_path, "totp", "prod") == 0

        assert capsys.readouterr().out == "287082 (1s left)\n"

    @pytest.mark.asyncio
    async def test_no_secret(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        assert await run(config_path, "totp", "prod") == 1
        assert "no TOTP secret stored for prod" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_server_required(self, config_path, capsys):
        assert await run(config_path, "totp") == 1
        assert "a server is required" in capsys.readouterr().err


class TestTestCommand:
    """Tests for the test command."""

    @pytest.mark.asyncio
    async def test_success(self, config_path, capsys):
        result = ConnectionTestResult(True, session_cookie="warpgate-http-session=abc")
        args = ("test", "warpgate.example.com", "alice", "-p", "s3cret", "--otp", "123456")
        with patch.object(SessionBroker, "test_server_connection", new=AsyncMock(return_value=result)) as mock:
            assert await run(config_path, *args) == 0

        mock.assert_awaited_once_with(
            "warpgate.example.com",
            "alice",
            "s3cret",
            trust_self_signed=False,
            otp_code="123456",
            otp_secret=None,
        )
        assert capsys.readouterr().out == "Connection successful\n"

    @pytest.mark.asyncio
    async def test_otp_secret(self, config_path, capsys):
        result = ConnectionTestResult(True)
        args = ("test", "warpgate.example.com", "alice", "-p", "s3cret", "--otp-secret", RFC_SECRET)
        with patch.object(SessionBroker, "test_server_connection", new=AsyncMock(return_value=result)) as mock, \
                patch.object(ConsoleOtpPrompter, "prompt", new=AsyncMock()) as prompt:
            assert await run(config_path, *args) == 0

        assert mock.await_args.kwargs["otp_secret"] == RFC_SECRET
        assert mock.await_args.kwargs["otp_code"] is None
        prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_otp_secret(self, config_path, capsys):
        args = ("test", "warpgate.example.com", "alice", "-p", "s3cret", "--otp-secret", "nope")
        with patch.object(SessionBroker, "test_server_connection", new=AsyncMock()) as mock:
            assert await run(config_path, *args) == 1
        mock.assert_not_awaited()
        assert "invalid TOTP secret" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_prompts_for_otp(self, config_path, capsys):
        pending = ConnectionTestResult(False, error="OTP required but not provided", needs_otp=True)
        accepted = ConnectionTestResult(True)
        with patch.object(SessionBroker, "test_server_connection", new=AsyncMock(return_value=pending)), \
                patch.object(SessionBroker, "submit_test_otp", new=AsyncMock(return_value=accepted)) as submit, \
                patch.object(ConsoleOtpPrompter, "prompt", new=AsyncMock(return_value="123456")):
            assert await run(config_path, "test", "warpgate.example.com", "alice", "-p", "s3cret") == 0

        submit.assert_awaited_once_with("warpgate.example.com", "alice", "123456")

    @pytest.mark.asyncio
    async def test_failure(self, config_path, capsys):
        failed = ConnectionTestResult(False, error="Server not found")
        with patch.object(SessionBroker, "test_server_connection", new=AsyncMock(return_value=failed)):
            assert await run(config_path, "test", "nowhere.invalid", "alice", "-p", "x") == 1
        assert "Connection failed: Server not found" in capsys.readouterr().err


class TestConnectedCommands:
    """Tests for targets and ticket, with the connect step patched."""

    @pytest.mark.asyncio
    async def test_targets(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        targets = [Target(name="db-01", description="primary", kind="Ssh")]

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch.object(SessionBroker, "get_server_targets", return_value=targets):
            assert await run(config_path, "targets", "prod") == 0

        assert capsys.readouterr().out == "db-01  Ssh  primary\n"

    @pytest.mark.asyncio
    async def test_connect_failure(self, config_path):
        await add_disabled(config_path, "prod")
        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=False)):
            assert await run(config_path, "targets", "prod") == 1

    @pytest.mark.asyncio
    async def test_ticket(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        details = ConnectionDetails("warpgate.example.com", 2222, "ticket-t1ck3t", use_ticket=True)

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch.object(SessionBroker, "get_or_create_ticket", new=AsyncMock(return_value=details)):
            assert await run(config_path, "ticket", "prod", "db-01") == 0

        assert capsys.readouterr().out == "ticket-t1ck3t@warpgate.example.com:2222\n"

    @pytest.mark.asyncio
    async def test_ticket_fallback(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        details = ConnectionDetails("warpgate.example.com", 2222, "alice:db-01")

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch.object(SessionBroker, "get_or_create_ticket", new=AsyncMock(return_value=details)):
            assert await run(config_path, "ticket", "prod", "db-01") == 0

        assert capsys.readouterr().out == "alice:db-01@warpgate.example.com:2222\n"

    @pytest.mark.asyncio
    async def test_ssh(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        conn = MagicMock()
        conn.run = AsyncMock(return_value=MagicMock(stdout="up 3 days\n", stderr="", exit_status=0))

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch("warpgate_broker.cli.connect_target", new=AsyncMock(return_value=conn)):
            assert await run(config_path, "ssh", "prod", "db-01", "--", "uptime", "-p") == 0

        conn.run.assert_awaited_once_with("uptime -p")
        conn.close.assert_called_once_with()
        assert capsys.readouterr().out == "up 3 days\n"

    @pytest.mark.asyncio
    async def test_sftp_lists_directory(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        conn = MagicMock()
        sftp = MagicMock()
        sftp.listdir = AsyncMock(return_value=["syslog", ".", "auth.log", ".."])

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch("warpgate_broker.cli.open_sftp", new=AsyncMock(return_value=(conn, sftp))) as opener:
            assert await run(config_path, "sftp", "prod", "db-01", "/var/log") == 0

        assert opener.await_args.args[2] == "db-01"
        sftp.listdir.assert_awaited_once_with("/var/log")
        sftp.exit.assert_called_once_with()
        conn.close.assert_called_once_with()
        assert capsys.readouterr().out == "auth.log\nsyslog\n"

    @pytest.mark.asyncio
    async def test_sftp_defaults_to_home(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        sftp = MagicMock()
        sftp.listdir = AsyncMock(return_value=[])

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch("warpgate_broker.cli.open_sftp", new=AsyncMock(return_value=(MagicMock(), sftp))):
            assert await run(config_path, "sftp", "prod", "db-01") == 0

        sftp.listdir.assert_awaited_once_with(".")

    @pytest.mark.asyncio
    async def test_pinned_targets_listed_first(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        capsys.readouterr()
        assert await run(config_path, "pin", "prod", "db-02") == 0
        targets = [
            Target(name="db-01", description="primary", kind="Ssh"),
            Target(name="db-02", description="replica", kind="Ssh"),
        ]

        with patch.object(SessionBroker, "connect", new=AsyncMock(return_value=True)), \
                patch.object(SessionBroker, "get_server_targets", return_value=targets):
            assert await run(config_path, "targets", "prod") == 0

        assert capsys.readouterr().out == "db-02  Ssh  replica\ndb-01  Ssh  primary\n"


class TestPinCommands:
    """Tests for pin and unpin."""

    @pytest.mark.asyncio
    async def test_pin_and_unpin(self, config_path, capsys):
        await add_disabled(config_path, "prod")
        server_id = capsys.readouterr().out.strip()

        assert await run(config_path, "pin", "prod", "db-01") == 0
        assert load(config_path)["pinned_hosts"] == [f"{server_id}:db-01"]

        assert await run(config_path, "unpin", "prod", "db-01") == 0
        assert load(config_path)["pinned_hosts"] == []

    @pytest.mark.asyncio
    async def test_pin_unknown_server(self, config_path, capsys):
        assert await run(config_path, "pin", "nothere", "db-01") == 1
        assert "no server 'nothere'" in capsys.readouterr().err


class TestConfigErrors:
    """Tests for unreadable configuration."""

    @pytest.mark.asyncio
    async def test_invalid_yaml(self, config_path, capsys):
        with open(config_path, "w") as f:
            f.write("servers: [unclosed\n")
        assert await run(config_path, "servers") == 1
        assert "cannot load" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_not_a_mapping(self, config_path, capsys):
        with open(config_path, "w") as f:
            f.write("- a\n")
        assert await run(config_path, "servers") == 1


class TestHelpers:
    """Tests for find_server and the console collaborators."""

    def test_find_server(self):
        broker = SessionBroker(
            MemoryConfigStore({"servers": [{"id": "wg-1", "name": "Production"}], "auto_refresh_interval": 0})
        )
        assert find_server(broker, "wg-1")["name"] == "Production"
        assert find_server(broker, "production")["id"] == "wg-1"
        assert find_server(broker, "staging") is None

    def test_notifications(self, capsys):
        sink = ConsoleNotifications()
        sink.info("Connected to prod")
        sink.notice("OTP required for prod")
        sink.error("Failed")
        assert capsys.readouterr().err == (
            "Connected to prod\nnotice: OTP required for prod\nerror: Failed\n"
        )

    @pytest.mark.asyncio
    async def test_prompter_reads_code(self):
        with patch("warpgate_broker.cli.getpass", return_value=" 123456 \n"):
            assert await ConsoleOtpPrompter().prompt("prod") == "123456"

    @pytest.mark.asyncio
    async def test_prompter_eof(self):
        with patch("warpgate_broker.cli.getpass", side_effect=EOFError):
            assert await ConsoleOtpPrompter().prompt("prod") is None
