"""Connection and encryption management for line-oriented mail protocols.

Opens the byte stream to a mail server in one of three encryption modes and
upgrades a plaintext stream to TLS in-session. Everything here is protocol
agnostic: the POP3 session drives it, one ``StreamHandle`` per session.
"""

import asyncio
import ssl
from typing import Optional

from mailfetch.core.models.mailbox import EncryptionMode
from mailfetch.utils.errors import (
    ConnectionFailedError,
    EncryptionMismatchError,
    MailFetchError,
    NetworkTimeoutError,
    ProtocolError,
)
from mailfetch.utils.logging import get_logger

from .constants import Timeouts

logger = get_logger(__name__)

# Stream buffer limit; long base64 lines must fit in one readline()
STREAM_LIMIT = 1024 * 1024

# Lower-cased fragments of errors raised when one side speaks TLS and the other does not
TLS_MISMATCH_PATTERNS = (
    "wrong version number",
    "eproto",
    "unknown protocol",
    "record layer failure",
    "packet length too long",
    "http request",
    "unexpected eof while reading",
)


def build_ssl_context(verify: bool = False) -> ssl.SSLContext:
    """Create the client SSL context.

    With ``verify=False`` self-signed and mismatched certificates are
    accepted; the host name is still sent as SNI by the caller.
    """
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def classify_connection_error(
    error: BaseException, host: str, port: int
) -> MailFetchError:
    """Map a low-level socket or TLS failure onto the error taxonomy."""
    text = str(error).lower()

    if isinstance(error, ssl.SSLError) or any(p in text for p in TLS_MISMATCH_PATTERNS):
        return EncryptionMismatchError(
            f"SSL/TLS handshake with {host}:{port} failed ({error})",
            details={"host": host, "port": port, "error": str(error)},
        )

    reason = error.strerror if isinstance(error, OSError) and error.strerror else str(error)
    return ConnectionFailedError.for_endpoint(host, port, reason or type(error).__name__)


class StreamHandle:
    """A bidirectional byte stream to one server.

    A handle becomes *detached* once it has been upgraded to TLS; the
    upgraded handle takes over the transport and the old one refuses any
    further I/O. Closing is idempotent.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
        secure: bool = False,
    ):
        self.reader = reader
        self.writer = writer
        self.host = host
        self.port = port
        self.secure = secure
        self.detached = False
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def _ensure_usable(self) -> None:
        if self.detached:
            raise ProtocolError(
                "Stream was upgraded to TLS; the plaintext handle can no longer be used",
                details={"host": self.host, "port": self.port},
            )
        if self.closed:
            raise ProtocolError(
                "Stream is closed", details={"host": self.host, "port": self.port}
            )

    async def readline(self, timeout: float = Timeouts.SOCKET_IDLE) -> str:
        """Read one line, without its line terminator.

        Raises:
            NetworkTimeoutError: If no complete line arrives within ``timeout``
            ProtocolError: If the server closes the connection or the line is oversized
        """
        self._ensure_usable()

        try:
            async with asyncio.timeout(timeout):
                data = await self.reader.readline()
        except TimeoutError as e:
            raise NetworkTimeoutError(
                f"Server did not respond within {timeout:g}s",
                details={"host": self.host, "port": self.port},
            ) from e
        except ValueError as e:
            raise ProtocolError(
                "Server sent an oversized line", details={"host": self.host}
            ) from e
        except (ConnectionError, ssl.SSLError) as e:
            raise ProtocolError(
                f"Connection to {self.host}:{self.port} lost ({e})",
                details={"host": self.host, "port": self.port},
            ) from e

        if not data:
            raise ProtocolError(
                "Connection closed by server",
                details={"host": self.host, "port": self.port},
            )

        return data.decode("utf-8", errors="replace").rstrip("\r\n")

    async def write_line(self, line: str) -> None:
        """Send one CRLF-terminated line."""
        self._ensure_usable()

        try:
            self.writer.write(f"{line}\r\n".encode("utf-8"))
            await self.writer.drain()
        except (ConnectionError, ssl.SSLError) as e:
            raise ProtocolError(
                f"Connection to {self.host}:{self.port} lost ({e})",
                details={"host": self.host, "port": self.port},
            ) from e

    async def close(self) -> None:
        """Close the transport. Repeated calls and detached handles are no-ops."""
        if self.detached or self.closed:
            return

        self.close_count += 1
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, ssl.SSLError, OSError) as e:
            logger.debug(
                "Error while closing stream",
                extra={"host": self.host, "port": self.port, "error": str(e)},
            )


async def open_stream(
    host: str,
    port: int,
    mode: EncryptionMode,
    *,
    verify: bool = False,
    timeout: float = Timeouts.SOCKET_IDLE,
) -> StreamHandle:
    """Open a stream in the requested encryption mode.

    ``NONE`` and ``STARTTLS`` yield a plaintext stream with nothing sent yet.
    ``IMPLICIT_TLS`` completes the TLS handshake before returning.

    Raises:
        ConnectionFailedError: DNS failure, refused or unreachable
        EncryptionMismatchError: TLS handshake failed
        NetworkTimeoutError: The connection could not be set up in time
    """
    context: Optional[ssl.SSLContext] = None
    if mode == EncryptionMode.IMPLICIT_TLS:
        context = build_ssl_context(verify)

    logger.debug(
        "Opening stream",
        extra={"host": host, "port": port, "encryption": mode.value, "verify": verify},
    )

    try:
        async with asyncio.timeout(timeout):
            reader, writer = await asyncio.open_connection(
                host,
                port,
                ssl=context,
                server_hostname=host if context else None,
                limit=STREAM_LIMIT,
            )
    except TimeoutError as e:
        raise NetworkTimeoutError(
            f"Connection to {host}:{port} timed out",
            details={"host": host, "port": port},
        ) from e
    except OSError as e:
        raise classify_connection_error(e, host, port) from e

    return StreamHandle(
        reader, writer, host, port, secure=mode == EncryptionMode.IMPLICIT_TLS
    )


async def upgrade_to_tls(
    handle: StreamHandle,
    host: str,
    *,
    verify: bool = False,
    timeout: float = Timeouts.SOCKET_IDLE,
) -> StreamHandle:
    """Run the TLS handshake over an established plaintext stream.

    Returns a new handle bound to the encrypted transport and marks
    ``handle`` detached.

    Raises:
        EncryptionMismatchError: The handshake failed
        NetworkTimeoutError: The handshake did not finish in time
    """
    handle._ensure_usable()

    try:
        async with asyncio.timeout(timeout):
            await handle.writer.start_tls(
                build_ssl_context(verify), server_hostname=host
            )
    except TimeoutError as e:
        raise NetworkTimeoutError(
            f"TLS upgrade with {handle.host}:{handle.port} timed out",
            details={"host": handle.host, "port": handle.port},
        ) from e
    except (ssl.SSLError, OSError) as e:
        raise EncryptionMismatchError(
            f"STARTTLS handshake with {handle.host}:{handle.port} failed ({e})",
            details={"host": handle.host, "port": handle.port},
        ) from e

    handle.detached = True
    logger.debug("Stream upgraded to TLS", extra={"host": handle.host, "port": handle.port})
    return StreamHandle(handle.reader, handle.writer, handle.host, handle.port, secure=True)
