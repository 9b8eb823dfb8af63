"""
Tests for CLI argument handling and command execution

Tests cover:
- Argument parsing
- Password sources
- Command execution and exit codes
"""
import json
from unittest.mock import AsyncMock, patch

import pytest

from mailfetch.cli import PASSWORD_ENV, build_request, main, setup_argument_parser
from mailfetch.core.models.mailbox import EncryptionMode, MailProtocol
from mailfetch.core.models.message import FetchResult, MessageRecord


@pytest.fixture
def config_file(tmp_path):
    """Config file that keeps logs off disk"""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"logging": {"log_to_file": False}}))
    return path


def parse(*argv):
    return setup_argument_parser().parse_args(list(argv))


class TestArgumentParsing:
    """Tests for the argument parser"""

    def test_fetch_defaults(self):
        args = parse("fetch", "--host", "mail.example.com", "--user", "alice")
        assert args.command == "fetch"
        assert args.protocol == "pop"
        assert args.port is None
        assert args.encryption is None
        assert args.folder == "INBOX"
        assert args.json is False

    def test_test_command_options(self):
        args = parse(
            "--debug", "test", "--protocol", "imap", "--host", "h",
            "--user", "u", "--port", "143", "--encryption", "tls",
        )
        assert args.debug is True
        assert args.port == 143
        assert args.encryption == "tls"

    def test_host_required(self):
        with pytest.raises(SystemExit):
            parse("fetch", "--user", "alice")

    def test_invalid_encryption(self):
        with pytest.raises(SystemExit):
            parse("fetch", "--host", "h", "--user", "u", "--encryption", "starttls")


class TestBuildRequest:
    """Tests for turning arguments into a FetchRequest"""

    def test_password_from_environment(self, monkeypatch):
        monkeypatch.setenv(PASSWORD_ENV, "from-env")
        request = build_request(parse("fetch", "--host", "h", "--user", "u"))

        assert request.protocol == MailProtocol.POP3
        assert request.pop.password == "from-env"
        assert request.imap is None

    def test_password_prompted(self):
        with patch("mailfetch.cli.getpass.getpass", return_value="typed") as mock_prompt:
            request = build_request(parse("fetch", "--host", "h", "--user", "u"))

        assert request.pop.password == "typed"
        mock_prompt.assert_called_once()

    def test_imap_request(self):
        args = parse(
            "fetch", "--protocol", "imap", "--host", "h", "--user", "u",
            "--password", "pw", "--encryption", "ssl", "--folder", "Archive",
        )
        request = build_request(args)

        assert request.protocol == MailProtocol.IMAP
        assert request.imap.encryption == EncryptionMode.IMPLICIT_TLS
        assert request.folder == "Archive"
        assert request.pop is None


class TestMain:
    """Tests for the entry point"""

    def test_fetch_success(self, config_file, capsys):
        result = FetchResult(
            success=True,
            emails=[MessageRecord(sender="Alice", subject="Quarterly report", body="Numbers")],
            message="Fetched 1 emails via POP3",
        )

        with patch("mailfetch.cli.MailFetchService") as mock_service:
            mock_service.return_value.fetch = AsyncMock(return_value=result)
            code = main([
                "--config", str(config_file), "fetch",
                "--host", "h", "--user", "u", "--password", "pw",
            ])

        assert code == 0
        assert "Quarterly report" in capsys.readouterr().out

    def test_config_file_not_rewritten(self, config_file):
        """Test a run only reads the config file"""
        original = config_file.read_text()

        with patch("mailfetch.cli.MailFetchService") as mock_service:
            mock_service.return_value.test_connection = AsyncMock(
                return_value=FetchResult(success=True, message="Connected")
            )
            main([
                "--config", str(config_file), "test",
                "--host", "h", "--user", "u", "--password", "pw",
            ])

        assert config_file.read_text() == original

    def test_failure_exit_code(self, config_file, capsys):
        with patch("mailfetch.cli.MailFetchService") as mock_service:
            mock_service.return_value.test_connection = AsyncMock(
                return_value=FetchResult.failure("Authentication failed")
            )
            code = main([
                "--config", str(config_file), "test",
                "--host", "h", "--user", "u", "--password", "pw",
            ])

        assert code == 1
        assert "Authentication failed" in capsys.readouterr().out

    def test_json_output(self, config_file, capsys):
        with patch("mailfetch.cli.MailFetchService") as mock_service:
            mock_service.return_value.test_connection = AsyncMock(
                return_value=FetchResult(success=True, message="Connected")
            )
            code = main([
                "--config", str(config_file), "test", "--json",
                "--host", "h", "--user", "u", "--password", "pw",
            ])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {
            "success": True,
            "emails": [],
            "message": "Connected",
        }

    def test_bad_config_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")

        code = main(["--config", str(path), "test", "--host", "h", "--user", "u"])
        assert code == 2
