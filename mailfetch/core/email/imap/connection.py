"""IMAP connection management - handles connection setup and cleanup."""

import asyncio
import ssl
import time
from typing import Optional

import aioimaplib
from aioimaplib.aioimaplib import Command

from mailfetch.core.models.mailbox import EncryptionMode, MailboxCredentials
from mailfetch.utils.config import FetchConfig
from mailfetch.utils.errors import (
    AuthenticationError,
    EncryptionMismatchError,
    IMAPError,
    NetworkTimeoutError,
)
from mailfetch.utils.logging import async_log_call, get_logger

from ..connection import build_ssl_context, classify_connection_error
from ..transcript import Transcript
from .constants import LOGOUT_TIMEOUT, IMAPResponse

logger = get_logger(__name__)


class IMAPConnection:
    """Manages one IMAP client from greeting to logout."""

    def __init__(
        self,
        credentials: MailboxCredentials,
        config: Optional[FetchConfig] = None,
        transcript: Optional[Transcript] = None,
    ):
        """Initialise IMAP connection.

        Args:
            credentials: Server address, account and encryption mode
            config: Timeouts and TLS policy (defaults when omitted)
            transcript: Where protocol steps are recorded for diagnostics
        """
        self.credentials = credentials
        self.config = config or FetchConfig()
        self.transcript = transcript or Transcript()
        self._client: Optional[aioimaplib.IMAP4] = None

    @property
    def client(self) -> aioimaplib.IMAP4:
        """The logged-in client.

        Raises:
            IMAPError: If ``connect()`` has not succeeded yet
        """
        if self._client is None:
            raise IMAPError(
                "IMAP connection is not open",
                details={"endpoint": self.credentials.endpoint},
            )
        return self._client

    def _create_client(self) -> aioimaplib.IMAP4:
        creds = self.credentials
        if creds.encryption == EncryptionMode.IMPLICIT_TLS:
            return aioimaplib.IMAP4_SSL(
                host=creds.host,
                port=creds.port,
                timeout=self.config.idle_timeout,
                ssl_context=build_ssl_context(self.config.verify_certificates),
            )
        return aioimaplib.IMAP4(
            host=creds.host, port=creds.port, timeout=self.config.idle_timeout
        )

    async def _starttls(self, client: aioimaplib.IMAP4) -> None:
        """Upgrade the plaintext connection in place before login.

        aioimaplib has no STARTTLS call of its own, so the command is sent
        through the client protocol and the transport is swapped for the
        TLS one. Capabilities are re-read afterwards as RFC 3501 requires.

        Raises:
            EncryptionMismatchError: If the server refuses and TLS is required,
                or the handshake fails
        """
        creds = self.credentials
        protocol = client.protocol
        timeout = self.config.idle_timeout

        response = await asyncio.wait_for(
            protocol.execute(
                Command("STARTTLS", protocol.new_tag(), loop=protocol.loop)
            ),
            timeout=timeout,
        )
        self.transcript.received(response.result)
        if response.result != IMAPResponse.OK:
            if self.config.require_tls:
                raise EncryptionMismatchError(
                    f"Server refused STARTTLS: {response.result}",
                    details={"server": creds.host, "port": creds.port},
                )
            logger.warning(
                "Server refused STARTTLS, continuing without encryption",
                extra={"server": creds.host, "response": response.result},
            )
            self.transcript.note("STARTTLS refused, continuing in plain text")
            return

        try:
            protocol.transport = await asyncio.wait_for(
                protocol.loop.start_tls(
                    protocol.transport,
                    protocol,
                    build_ssl_context(self.config.verify_certificates),
                    server_hostname=creds.host,
                ),
                timeout=timeout,
            )
        except (ssl.SSLError, ConnectionError) as e:
            raise EncryptionMismatchError(
                f"STARTTLS handshake with {creds.endpoint} failed ({e})",
                details={"server": creds.host, "port": creds.port},
            ) from e

        await asyncio.wait_for(protocol.capability(), timeout=timeout)
        self.transcript.note("TLS established")
        logger.debug("IMAP connection upgraded to TLS", extra={"server": creds.host})

    @async_log_call
    async def connect(self) -> aioimaplib.IMAP4:
        """Connect, optionally upgrade with STARTTLS, and log in.

        Returns:
            Logged-in aioimaplib client

        Raises:
            AuthenticationError: If the server rejects the login
            NetworkTimeoutError: If the server does not greet in time
            ConnectionFailedError: If the socket cannot be opened
            EncryptionMismatchError: If the TLS handshake fails
            IMAPError: If other IMAP errors occur
        """
        creds = self.credentials
        start_time = time.time()

        logger.info(
            "Connecting to IMAP server",
            extra={
                "server": creds.host,
                "port": creds.port,
                "encryption": creds.encryption.value,
            },
        )

        self.transcript.note(
            f"Connecting to {creds.endpoint} ({creds.encryption.value})"
        )

        try:
            client = self._create_client()
            self._client = client

            await asyncio.wait_for(
                client.wait_hello_from_server(), timeout=self.config.idle_timeout
            )
            self.transcript.note("Server greeting received")

            if creds.encryption == EncryptionMode.STARTTLS:
                self.transcript.sent("STARTTLS")
                await self._starttls(client)

            self.transcript.sent(f"LOGIN {creds.username}")
            response = await asyncio.wait_for(
                client.login(creds.username, creds.secret.get_secret_value()),
                timeout=self.config.idle_timeout,
            )
            self.transcript.received(response.result)
            if response.result != IMAPResponse.OK:
                raise AuthenticationError(
                    f"IMAP login failed for {creds.username}",
                    details={"server": creds.host, "username": creds.username},
                )

        except asyncio.TimeoutError as e:
            logger.error(
                f"IMAP connection timed out after {time.time() - start_time:.2f}s"
            )
            raise NetworkTimeoutError(
                f"IMAP connection to {creds.endpoint} timed out",
                details={"server": creds.host, "port": creds.port},
            ) from e

        except aioimaplib.AioImapException as e:
            raise IMAPError(
                f"IMAP connection error: {str(e)}",
                details={"server": creds.host},
            ) from e

        except (ssl.SSLError, OSError) as e:
            raise classify_connection_error(e, creds.host, creds.port) from e

        logger.info(
            "IMAP connection established",
            extra={
                "server": creds.host,
                "username": creds.username,
                "duration_seconds": round(time.time() - start_time, 2),
            },
        )
        return client

    async def close(self) -> None:
        """Log out and drop the client. Safe to call more than once."""
        if self._client is None:
            return

        client, self._client = self._client, None
        try:
            await asyncio.wait_for(client.logout(), timeout=LOGOUT_TIMEOUT)
            logger.debug("IMAP connection closed successfully")
        except (asyncio.TimeoutError, aioimaplib.AioImapException, OSError) as e:
            logger.debug(f"Error closing IMAP connection: {str(e)}")

    async def test(self) -> str:
        """Connect, log in and log out.

        Returns:
            Human-readable success message
        """
        try:
            await self.connect()
        finally:
            await self.close()
        return f"Connected to IMAP server {self.credentials.endpoint}"

    ## Context Manager Helpers

    async def __aenter__(self):
        """Enter async context manager."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        await self.close()
