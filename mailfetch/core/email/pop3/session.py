"""POP3 session state machine.

One ``Pop3Session`` drives one connection from greeting to QUIT:

    GREETING -> [STLS] -> USER -> PASS -> LIST -> RETR* -> QUIT -> SUCCESS

Any failure, including the whole-session timeout, ends the session in
``ERROR``. Either way the stream is closed exactly once and the caller gets
a ``FetchResult`` carrying the protocol transcript for diagnostics.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Tuple

from mailfetch.core.models.mailbox import EncryptionMode, MailboxCredentials
from mailfetch.core.models.message import FetchResult, MessageRecord, RawMessageBlock
from mailfetch.utils.config import FetchConfig
from mailfetch.utils.errors import (
    AuthenticationError,
    EncryptionMismatchError,
    MailFetchError,
    NetworkTimeoutError,
    ProtocolError,
)
from mailfetch.utils.logging import async_log_call, get_logger

from ..connection import StreamHandle, open_stream, upgrade_to_tls
from ..parser import EmailParser
from ..transcript import Transcript
from .constants import TRANSITIONS, Pop3Command, Pop3Response, Pop3State

logger = get_logger(__name__)


class Pop3Session:
    """Single-use POP3 session for one mailbox.

    Example:
        >>> session = Pop3Session(credentials)
        >>> result = await session.fetch()
        >>> [record.subject for record in result.emails]
    """

    def __init__(
        self, credentials: MailboxCredentials, config: Optional[FetchConfig] = None
    ):
        self.credentials = credentials
        self.config = config or FetchConfig()
        self.state = Pop3State.GREETING
        self.transcript = Transcript()
        self._handle: Optional[StreamHandle] = None
        self._started = False

    @property
    def handle(self) -> Optional[StreamHandle]:
        """The stream currently in use (the upgraded one after STLS)."""
        return self._handle

    @async_log_call
    async def fetch(self) -> FetchResult:
        """Log in and retrieve the most recent messages, oldest first."""
        return await self._run(self._fetch_messages, self.config.fetch_timeout)

    @async_log_call
    async def test(self) -> FetchResult:
        """Log in and log out again without touching the mailbox."""
        return await self._run(self._check_login, self.config.test_timeout)

    ## Session driver

    async def _run(
        self, steps: Callable[[], Awaitable[FetchResult]], timeout: float
    ) -> FetchResult:
        if self._started:
            raise ProtocolError("A POP3 session can only be run once")
        self._started = True

        try:
            async with asyncio.timeout(timeout):
                return await steps()

        except TimeoutError:
            return self._fail(
                NetworkTimeoutError(
                    f"Connection timeout after {timeout:g}s",
                    details={"endpoint": self.credentials.endpoint, "state": self.state.value},
                )
            )

        except MailFetchError as e:
            return self._fail(e)

        finally:
            await self._close()

    def _advance(self, state: Pop3State) -> None:
        if state not in TRANSITIONS[self.state]:
            raise ProtocolError(
                f"Illegal POP3 state transition {self.state.value} -> {state.value}"
            )
        logger.debug(
            "POP3 state change",
            extra={"from": self.state.value, "to": state.value},
        )
        self.state = state

    def _fail(self, error: MailFetchError) -> FetchResult:
        if not self.state.is_terminal:
            self.state = Pop3State.ERROR

        logger.warning(
            f"POP3 session failed: {error.message}",
            extra={
                "endpoint": self.credentials.endpoint,
                "error_type": type(error).__name__,
            },
        )
        return FetchResult.failure(error.describe(), debug=self.transcript.render())

    async def _close(self) -> None:
        if self._handle is None:
            return

        try:
            async with asyncio.timeout(self.config.quit_timeout):
                await self._handle.close()
        except TimeoutError:
            logger.debug("Timed out waiting for the stream to close")

    ## Conversation steps

    async def _fetch_messages(self) -> FetchResult:
        await self._open()
        entries = await self._list()

        records: List[MessageRecord] = []
        for sequence, size in entries[-self.config.pop3_fetch_limit :]:
            self._advance(Pop3State.RETR)
            block = await self._retrieve(sequence, size)
            if block is not None:
                records.append(
                    EmailParser.from_raw(block.data, max_chars=self.config.body_max_chars)
                )

        await self._quit()
        self._advance(Pop3State.SUCCESS)

        logger.info(
            "POP3 fetch complete",
            extra={
                "endpoint": self.credentials.endpoint,
                "available": len(entries),
                "retrieved": len(records),
            },
        )
        return FetchResult(
            success=True, emails=records, debug=self.transcript.render()
        )

    async def _check_login(self) -> FetchResult:
        await self._open()
        await self._quit()
        self._advance(Pop3State.SUCCESS)
        return FetchResult(
            success=True,
            message=f"Connected to POP3 server {self.credentials.endpoint}",
        )

    async def _open(self) -> None:
        creds = self.credentials
        self.transcript.note(f"Connecting to {creds.endpoint} ({creds.encryption.value})")

        self._handle = await open_stream(
            creds.host,
            creds.port,
            creds.encryption,
            verify=self.config.verify_certificates,
            timeout=self.config.idle_timeout,
        )

        greeting = await self._read_line()
        if not greeting.startswith(Pop3Response.OK):
            raise ProtocolError(
                f"Unexpected server greeting: {greeting}",
                details={"endpoint": creds.endpoint},
            )

        if creds.encryption == EncryptionMode.STARTTLS:
            await self._starttls()

        await self._login()

    async def _starttls(self) -> None:
        self._advance(Pop3State.STLS)
        reply = await self._command(Pop3Command.STLS)

        if reply.startswith(Pop3Response.OK):
            self._handle = await upgrade_to_tls(
                self._handle,
                self.credentials.host,
                verify=self.config.verify_certificates,
                timeout=self.config.idle_timeout,
            )
            self.transcript.note("TLS established")
            return

        if self.config.require_tls:
            raise EncryptionMismatchError(
                f"Server refused STLS: {reply}",
                details={"endpoint": self.credentials.endpoint},
            )

        logger.warning(
            "Server refused STLS, continuing without encryption",
            extra={"endpoint": self.credentials.endpoint, "reply": reply},
        )
        self.transcript.note("STLS refused, continuing in plain text")

    async def _login(self) -> None:
        creds = self.credentials

        self._advance(Pop3State.USER)
        reply = await self._command(f"{Pop3Command.USER} {creds.username}")
        if not reply.startswith(Pop3Response.OK):
            raise AuthenticationError(
                f"Server rejected user {creds.username}: {reply}",
                details={"endpoint": creds.endpoint},
            )

        self._advance(Pop3State.PASS)
        reply = await self._command(
            f"{Pop3Command.PASS} {creds.secret.get_secret_value()}"
        )
        if not reply.startswith(Pop3Response.OK):
            raise AuthenticationError(
                f"Login failed for {creds.username}: {reply}",
                details={"endpoint": creds.endpoint},
            )

    async def _list(self) -> List[Tuple[int, int]]:
        self._advance(Pop3State.LIST)
        reply = await self._command(Pop3Command.LIST)
        if not reply.startswith(Pop3Response.OK):
            raise ProtocolError(f"LIST failed: {reply}")

        entries: List[Tuple[int, int]] = []
        for line in await self._read_multiline():
            fields = line.split()
            if len(fields) >= 2 and fields[0].isdigit() and fields[1].isdigit():
                entries.append((int(fields[0]), int(fields[1])))
            else:
                logger.debug("Ignoring malformed LIST entry", extra={"line": line})

        return entries

    async def _retrieve(self, sequence: int, size: int) -> Optional[RawMessageBlock]:
        reply = await self._command(f"{Pop3Command.RETR} {sequence}")
        if not reply.startswith(Pop3Response.OK):
            logger.warning(
                "Server refused to return message",
                extra={"sequence": sequence, "reply": reply},
            )
            return None

        lines = await self._read_multiline()
        return RawMessageBlock(sequence=sequence, size=size, data="\r\n".join(lines))

    async def _quit(self) -> None:
        """Send QUIT; the reply is awaited briefly and its absence ignored."""
        self._advance(Pop3State.QUIT)
        try:
            self.transcript.sent(Pop3Command.QUIT)
            await self._handle.write_line(Pop3Command.QUIT)
            self.transcript.received(
                await self._handle.readline(timeout=self.config.quit_timeout)
            )
        except MailFetchError as e:
            logger.debug("No reply to QUIT", extra={"error": str(e)})

    ## Line I/O

    async def _command(self, line: str) -> str:
        """Send a command and return its status line."""
        self.transcript.sent(line)
        await self._handle.write_line(line)
        return await self._read_line()

    async def _read_line(self) -> str:
        line = await self._handle.readline(timeout=self.config.idle_timeout)
        self.transcript.received(line)
        return line

    async def _read_multiline(self) -> List[str]:
        """Read a dot-terminated response body, undoing dot-stuffing."""
        lines: List[str] = []
        while True:
            line = await self._handle.readline(timeout=self.config.idle_timeout)
            if line == Pop3Response.TERMINATOR:
                break
            if line.startswith(Pop3Response.TERMINATOR):
                line = line[1:]
            lines.append(line)

        self.transcript.note(f"{len(lines)} lines received")
        return lines
