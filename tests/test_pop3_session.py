"""
Tests for the POP3 session state machine

Tests cover:
- Full fetch against a scripted server
- Command ordering and dot-unstuffing
- Authentication and greeting failures
- STARTTLS upgrade and refusal
- Session and idle timeouts
- Connectivity-test mode
"""
import time
from unittest.mock import patch

import pytest

from mailfetch.core.email.connection import StreamHandle
from mailfetch.core.email.pop3 import Pop3Session, Pop3State
from mailfetch.core.email.transcript import Transcript
from mailfetch.core.email.pop3.constants import TRANSITIONS
from mailfetch.core.models.mailbox import EncryptionMode
from mailfetch.utils.errors import ProtocolError

from .test_helpers import MessageTestHelper, MockPop3Server, server_ssl_context


class TestPop3Fetch:
    """Tests for a complete fetch"""

    @pytest.mark.asyncio
    async def test_fetch_two_messages(self, sample_messages, credentials_factory, fast_config):
        """Test a two-message mailbox yields exactly two records"""
        async with MockPop3Server(sample_messages) as server:
            session = Pop3Session(credentials_factory(server.port), fast_config)
            result = await session.fetch()

        assert result.success is True
        assert len(result.emails) == 2
        assert [e.subject for e in result.emails] == ["First message", "Second message"]
        assert result.emails[0].sender == "Alice Example"
        assert result.emails[0].from_email == "alice@example.com"
        assert result.emails[0].body == "Hello from the first message."
        assert session.state == Pop3State.SUCCESS

    @pytest.mark.asyncio
    async def test_command_order(self, sample_messages, credentials_factory, fast_config):
        """Test USER, PASS, LIST, RETR and QUIT are sent in order"""
        async with MockPop3Server(sample_messages) as server:
            await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert server.received == [
            "USER alice",
            "PASS s3cr3t-pw",
            "LIST",
            "RETR 1",
            "RETR 2",
            "QUIT",
        ]

    @pytest.mark.asyncio
    async def test_dot_unstuffing(self, sample_messages, credentials_factory, fast_config):
        """Test a stuffed '..' line arrives as a single leading dot"""
        async with MockPop3Server(sample_messages) as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        body = result.emails[1].body
        assert ".leading dot line" in body
        assert "..leading" not in body

    @pytest.mark.asyncio
    async def test_only_most_recent_messages_retrieved(self, credentials_factory, fast_config):
        """Test only the last pop3_fetch_limit messages are retrieved"""
        messages = [
            MessageTestHelper.build_message(subject=f"Message {i}", sender="a@example.com", body="x")
            for i in range(1, 13)
        ]
        async with MockPop3Server(messages) as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        retrieved = [c for c in server.received if c.startswith("RETR")]
        assert retrieved == [f"RETR {n}" for n in range(3, 13)]
        assert result.emails[-1].subject == "Message 12"

    @pytest.mark.asyncio
    async def test_empty_mailbox(self, credentials_factory, fast_config):
        """Test an empty mailbox succeeds with no records"""
        async with MockPop3Server([]) as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert result.success is True
        assert result.emails == []
        assert server.commands == ["USER", "PASS", "LIST", "QUIT"]

    @pytest.mark.asyncio
    async def test_handle_closed_exactly_once(self, sample_messages, credentials_factory, fast_config):
        """Test the stream is closed once after a successful fetch"""
        async with MockPop3Server(sample_messages) as server:
            session = Pop3Session(credentials_factory(server.port), fast_config)
            await session.fetch()

        assert session.handle.close_count == 1

    @pytest.mark.asyncio
    async def test_session_is_single_use(self, credentials_factory, fast_config):
        """Test running a session twice is rejected"""
        async with MockPop3Server([]) as server:
            session = Pop3Session(credentials_factory(server.port), fast_config)
            await session.fetch()

            with pytest.raises(ProtocolError):
                await session.fetch()


class TestPop3Failures:
    """Tests for failure paths"""

    @pytest.mark.asyncio
    async def test_password_rejected(self, credentials_factory, fast_config):
        """Test -ERR to PASS is reported as an authentication failure"""
        async with MockPop3Server(pass_reply="-ERR invalid login") as server:
            session = Pop3Session(credentials_factory(server.port), fast_config)
            result = await session.fetch()

        assert result.success is False
        assert "Check username and password" in result.error
        assert session.state == Pop3State.ERROR
        assert "LIST" not in server.commands
        assert session.handle.close_count == 1

    @pytest.mark.asyncio
    async def test_user_rejected(self, credentials_factory, fast_config):
        """Test -ERR to USER stops before PASS"""
        async with MockPop3Server(user_reply="-ERR no such user") as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert result.success is False
        assert server.commands == ["USER"]

    @pytest.mark.asyncio
    async def test_bad_greeting(self, credentials_factory, fast_config):
        """Test a -ERR greeting fails the session"""
        async with MockPop3Server(greeting="-ERR service unavailable") as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert result.success is False
        assert "Unexpected server greeting" in result.error
        assert server.received == []

    @pytest.mark.asyncio
    async def test_list_rejected(self, credentials_factory, fast_config):
        """Test -ERR to LIST is a protocol error"""
        async with MockPop3Server(list_reply="-ERR mailbox locked") as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert result.success is False
        assert "LIST failed" in result.error

    @pytest.mark.asyncio
    async def test_connection_dropped_mid_session(self, sample_messages, credentials_factory, fast_config):
        """Test premature end of stream is a protocol error"""
        async with MockPop3Server(sample_messages, close_on="RETR") as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert result.success is False
        assert "Connection closed by server" in result.error

    @pytest.mark.asyncio
    async def test_transcript_masks_password(self, credentials_factory, fast_config):
        """Test the returned transcript never contains the password"""
        async with MockPop3Server(pass_reply="-ERR invalid login") as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).fetch()

        assert "PASS ****" in result.debug
        assert "s3cr3t-pw" not in result.debug
        assert ">>> USER alice" in result.debug
        assert "<<< -ERR invalid login" in result.debug


class TestPop3Timeouts:
    """Tests for session and idle timeouts"""

    @pytest.mark.asyncio
    async def test_silent_server_hits_session_timeout(self, credentials_factory, fast_config):
        """Test a silent server times out at or after the threshold with one close"""
        config = fast_config.model_copy(update={"fetch_timeout": 0.3, "idle_timeout": 5.0})

        async with MockPop3Server(silent=True) as server:
            session = Pop3Session(credentials_factory(server.port), config)
            started = time.monotonic()
            result = await session.fetch()
            elapsed = time.monotonic() - started

        assert result.success is False
        assert "timeout" in result.error.lower()
        assert elapsed >= 0.3
        assert session.state == Pop3State.ERROR
        assert session.handle.close_count == 1

    @pytest.mark.asyncio
    async def test_idle_timeout(self, credentials_factory, fast_config):
        """Test a read that stalls past idle_timeout fails the session"""
        config = fast_config.model_copy(update={"idle_timeout": 0.2})

        async with MockPop3Server(silent=True) as server:
            session = Pop3Session(credentials_factory(server.port), config)
            result = await session.fetch()

        assert result.success is False
        assert "did not respond" in result.error
        assert session.handle.close_count == 1


class TestPop3StartTLS:
    """Tests for the STLS upgrade"""

    @staticmethod
    def fake_upgrade(upgraded):
        async def _upgrade(handle, host, **kwargs):
            handle.detached = True
            new_handle = StreamHandle(handle.reader, handle.writer, handle.host, handle.port, secure=True)
            upgraded.append((handle, new_handle, host))
            return new_handle
        return _upgrade

    @pytest.mark.asyncio
    async def test_stls_sent_before_user(self, sample_messages, credentials_factory, fast_config):
        """Test STLS precedes USER and the upgraded handle is used afterwards"""
        upgraded = []
        async with MockPop3Server(sample_messages, stls_reply="+OK begin TLS") as server:
            session = Pop3Session(
                credentials_factory(server.port, encryption=EncryptionMode.STARTTLS), fast_config
            )
            with patch(
                "mailfetch.core.email.pop3.session.upgrade_to_tls",
                side_effect=self.fake_upgrade(upgraded),
            ):
                result = await session.fetch()

        assert result.success is True
        assert server.commands[:2] == ["STLS", "USER"]

        plain_handle, tls_handle, host = upgraded[0]
        assert host == "127.0.0.1"
        assert session.handle is tls_handle
        assert tls_handle.secure is True
        assert plain_handle.detached is True
        assert plain_handle.close_count == 0
        assert tls_handle.close_count == 1

    @pytest.mark.asyncio
    async def test_stls_upgrades_real_socket(self, sample_messages, credentials_factory, fast_config):
        """Test the handshake completes and every later command is encrypted"""
        async with MockPop3Server(sample_messages, ssl_context=server_ssl_context()) as server:
            session = Pop3Session(
                credentials_factory(server.port, encryption=EncryptionMode.STARTTLS), fast_config
            )
            result = await session.fetch()

        assert result.success is True
        assert [record.subject for record in result.emails] == ["First message", "Second message"]
        assert session.handle.secure is True
        assert server.commands[0] == "STLS"
        assert [line.split(" ", 1)[0] for line in server.encrypted] == [
            "USER", "PASS", "LIST", "RETR", "RETR", "QUIT",
        ]
        assert "PASS s3cr3t-pw" in server.encrypted

    @pytest.mark.asyncio
    async def test_implicit_tls_session(self, sample_messages, credentials_factory, fast_config):
        """Test ssl mode speaks TLS from the greeting onwards"""
        async with MockPop3Server(
            sample_messages, ssl_context=server_ssl_context(), implicit_tls=True
        ) as server:
            session = Pop3Session(
                credentials_factory(server.port, encryption=EncryptionMode.IMPLICIT_TLS), fast_config
            )
            result = await session.fetch()

        assert result.success is True
        assert len(result.emails) == 2
        assert "STLS" not in server.commands
        assert server.encrypted == server.received

    @pytest.mark.asyncio
    async def test_stls_refused_falls_back_to_plaintext(self, sample_messages, credentials_factory, fast_config):
        """Test -ERR to STLS continues unencrypted by default"""
        async with MockPop3Server(sample_messages) as server:
            session = Pop3Session(
                credentials_factory(server.port, encryption=EncryptionMode.STARTTLS), fast_config
            )
            with patch("mailfetch.core.email.pop3.session.upgrade_to_tls") as mock_upgrade:
                result = await session.fetch()

        assert result.success is True
        assert server.commands[:2] == ["STLS", "USER"]
        mock_upgrade.assert_not_called()
        assert "STLS refused" in result.debug

    @pytest.mark.asyncio
    async def test_stls_refused_with_require_tls(self, credentials_factory, fast_config):
        """Test -ERR to STLS fails when TLS is required"""
        config = fast_config.model_copy(update={"require_tls": True})

        async with MockPop3Server() as server:
            session = Pop3Session(
                credentials_factory(server.port, encryption=EncryptionMode.STARTTLS), config
            )
            result = await session.fetch()

        assert result.success is False
        assert "Server refused STLS" in result.error
        assert "Try changing the encryption setting" in result.error
        assert "USER" not in server.commands


class TestPop3ConnectionTest:
    """Tests for connectivity-test mode"""

    @pytest.mark.asyncio
    async def test_connection_test_success(self, credentials_factory, fast_config):
        """Test test() logs in and out without listing"""
        async with MockPop3Server() as server:
            result = await Pop3Session(credentials_factory(server.port), fast_config).test()

        assert result.success is True
        assert result.message == f"Connected to POP3 server 127.0.0.1:{server.port}"
        assert server.commands == ["USER", "PASS", "QUIT"]

    @pytest.mark.asyncio
    async def test_connection_test_refused_port(self, credentials_factory, fast_config):
        """Test an unreachable port reports a connection failure"""
        async with MockPop3Server() as server:
            port = server.port

        result = await Pop3Session(credentials_factory(port), fast_config).test()

        assert result.success is False
        assert f"Cannot connect to 127.0.0.1:{port}" in result.error
        assert "Check server address, port, and firewall" in result.error


class TestStateMachine:
    """Tests for the transition table and transcript"""

    def test_terminal_states_have_no_exits(self):
        """Test SUCCESS and ERROR are terminal"""
        assert TRANSITIONS[Pop3State.SUCCESS] == set()
        assert TRANSITIONS[Pop3State.ERROR] == set()

    def test_no_backward_transitions(self):
        """Test no state can return to GREETING or USER after login"""
        for state in (Pop3State.PASS, Pop3State.LIST, Pop3State.RETR, Pop3State.QUIT):
            assert Pop3State.GREETING not in TRANSITIONS[state]
            assert Pop3State.USER not in TRANSITIONS[state]

    def test_illegal_transition_raises(self):
        """Test _advance rejects a move outside the table"""
        from .test_helpers import CredentialsTestHelper

        session = Pop3Session(CredentialsTestHelper.create_credentials())
        with pytest.raises(ProtocolError):
            session._advance(Pop3State.RETR)

    def test_transcript_clips_long_lines(self):
        """Test received lines are clipped"""
        transcript = Transcript(max_line=10)
        transcript.received("x" * 50)
        assert transcript.render() == "<<< " + "x" * 10 + "..."

    def test_transcript_masks_credentials(self):
        """Test PASS and LOGIN arguments never reach the transcript"""
        transcript = Transcript()
        transcript.sent("PASS hunter2")
        transcript.sent("login alice hunter2")
        transcript.sent("LIST")

        assert transcript.render() == "\n".join([
            ">>> PASS ****",
            ">>> LOGIN ****",
            ">>> LIST",
        ])
