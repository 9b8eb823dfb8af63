"""Mail fetch service - picks a retrieval protocol and runs it."""

import asyncio
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from mailfetch.core.email.constants import DefaultPorts
from mailfetch.core.email.imap.connection import IMAPConnection
from mailfetch.core.email.imap.protocol import IMAPProtocol
from mailfetch.core.email.parser import EmailParser
from mailfetch.core.email.pop3.session import Pop3Session
from mailfetch.core.email.transcript import Transcript
from mailfetch.core.models.mailbox import (
    EncryptionMode,
    FetchRequest,
    MailboxCredentials,
    MailProtocol,
    ServerSettings,
)
from mailfetch.core.models.message import FetchResult, MessageRecord
from mailfetch.utils.config import FetchConfig
from mailfetch.utils.errors import (
    ErrorHandler,
    MailFetchError,
    MissingRequiredFieldError,
    NetworkTimeoutError,
    ValidationError,
    format_error_message,
)
from mailfetch.utils.logging import async_log_call, get_logger

logger = get_logger(__name__)

NO_SERVER_CONFIGURED = (
    "No incoming mail server configured. "
    "Please configure IMAP or POP3 settings in Email Configuration."
)

_LABELS = {MailProtocol.POP3: "POP3", MailProtocol.IMAP: "IMAP"}
_DEFAULT_PORTS = {
    MailProtocol.POP3: DefaultPorts.POP3,
    MailProtocol.IMAP: DefaultPorts.IMAP_SSL,
}
_DEFAULT_ENCRYPTION = {
    MailProtocol.POP3: EncryptionMode.NONE,
    MailProtocol.IMAP: EncryptionMode.IMPLICIT_TLS,
}


def resolve_protocol(request: FetchRequest) -> Optional[MailProtocol]:
    """Choose the protocol for a request.

    IMAP wins when an IMAP host is configured and the request asks for IMAP
    or for nothing in particular; otherwise POP3 is used when a POP3 host is
    configured and either POP3 was asked for or there is no IMAP host.
    """
    imap_host = request.imap.host.strip() if request.imap else ""
    pop_host = request.pop.host.strip() if request.pop else ""

    if imap_host and request.protocol in (MailProtocol.IMAP, None):
        return MailProtocol.IMAP
    if pop_host and (request.protocol == MailProtocol.POP3 or not imap_host):
        return MailProtocol.POP3
    return None


def build_credentials(
    protocol: MailProtocol, settings: Optional[ServerSettings], detailed: bool = True
) -> MailboxCredentials:
    """Validate loosely-entered settings and apply protocol defaults.

    Args:
        protocol: Protocol the settings are for
        settings: User-entered server settings
        detailed: Report the first missing field by name; otherwise one
            combined username/password message is used

    Raises:
        MissingRequiredFieldError: If host, username or password is missing
    """
    label = _LABELS[protocol]
    settings = settings or ServerSettings()

    if not settings.host.strip():
        raise MissingRequiredFieldError(f"{label} host is required")

    if detailed:
        if not settings.username.strip():
            raise MissingRequiredFieldError(f"{label} username is required")
        if not settings.password:
            raise MissingRequiredFieldError(f"{label} password is required")
    elif not settings.username.strip() or not settings.password:
        raise MissingRequiredFieldError(f"{label} username and password required")

    try:
        return MailboxCredentials(
            host=settings.host,
            port=settings.port or _DEFAULT_PORTS[protocol],
            username=settings.username,
            secret=settings.password,
            encryption=settings.encryption or _DEFAULT_ENCRYPTION[protocol],
        )
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {label} settings: {e.errors()[0]['msg']}",
            details={"host": settings.host, "port": settings.port},
        ) from e


class MailFetchService:
    """Fetch recent messages or test connectivity for one configured mailbox.

    Every public coroutine resolves to a ``FetchResult``; failures are
    reported in it rather than raised. Records come back newest first.
    """

    def __init__(self, config: Optional[FetchConfig] = None):
        """Initialise mail fetch service.

        Args:
            config: Limits, timeouts and TLS policy (defaults when omitted)
        """
        self.config = config or FetchConfig()

    @async_log_call
    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Fetch the newest messages using the protocol the request resolves to."""
        protocol = resolve_protocol(request)
        logger.info(
            "Fetch request",
            extra={
                "protocol": request.protocol.value if request.protocol else None,
                "resolved": protocol.value if protocol else None,
            },
        )

        if protocol is None:
            return FetchResult.failure(NO_SERVER_CONFIGURED)

        settings = request.imap if protocol == MailProtocol.IMAP else request.pop
        try:
            credentials = build_credentials(protocol, settings, detailed=False)
        except MailFetchError as e:
            return FetchResult.failure(e.message)

        try:
            if protocol == MailProtocol.IMAP:
                result = await self.fetch_imap(credentials, request.folder)
            else:
                result = await self.fetch_pop3(credentials)
        except Exception as e:
            ErrorHandler.handle(e, "Mail fetch", log_traceback=True)
            return FetchResult.failure(format_error_message(e))

        if result.success:
            count = len(result.emails)
            result.message = f"Fetched {count} emails via {_LABELS[protocol]}"
        return result

    @async_log_call
    async def test_connection(self, request: FetchRequest) -> FetchResult:
        """Check that the resolved server accepts the configured login."""
        protocol = request.protocol or resolve_protocol(request)
        if protocol is None:
            return FetchResult.failure(NO_SERVER_CONFIGURED)

        settings = request.imap if protocol == MailProtocol.IMAP else request.pop
        try:
            credentials = build_credentials(protocol, settings, detailed=True)
        except MailFetchError as e:
            return FetchResult.failure(e.message)

        try:
            if protocol == MailProtocol.IMAP:
                return await self.test_imap(credentials)
            return await self.test_pop3(credentials)
        except Exception as e:
            ErrorHandler.handle(e, "Connection test", log_traceback=True)
            return FetchResult.failure(format_error_message(e))

    ## POP3

    async def fetch_pop3(self, credentials: MailboxCredentials) -> FetchResult:
        """Fetch the most recent POP3 messages, newest first."""
        result = await Pop3Session(credentials, self.config).fetch()
        result.emails.reverse()
        return result

    async def test_pop3(self, credentials: MailboxCredentials) -> FetchResult:
        return await Pop3Session(credentials, self.config).test()

    ## IMAP

    async def fetch_imap(
        self, credentials: MailboxCredentials, folder: str = "INBOX"
    ) -> FetchResult:
        """Fetch the most recent messages of an IMAP folder, newest first."""
        timeout = self.config.fetch_timeout
        transcript = Transcript()

        try:
            async with asyncio.timeout(timeout):
                async with IMAPConnection(
                    credentials, self.config, transcript
                ) as connection:
                    protocol = IMAPProtocol(connection)
                    total = await protocol.select_folder(folder)
                    window = await protocol.fetch_window(
                        total, self.config.imap_fetch_limit
                    )

        except TimeoutError:
            transcript.note(f"Timed out after {timeout:g}s")
            return self._failure(
                NetworkTimeoutError(
                    f"Connection timeout after {timeout:g}s",
                    details={"endpoint": credentials.endpoint},
                ),
                transcript,
            )
        except MailFetchError as e:
            return self._failure(e, transcript)

        records = self._to_records(window)
        logger.info(
            "IMAP fetch complete",
            extra={"folder": folder, "exists": total, "retrieved": len(records)},
        )
        return FetchResult(success=True, emails=records, debug=transcript.render())

    async def test_imap(self, credentials: MailboxCredentials) -> FetchResult:
        timeout = self.config.test_timeout
        transcript = Transcript()

        try:
            async with asyncio.timeout(timeout):
                message = await IMAPConnection(
                    credentials, self.config, transcript
                ).test()
        except TimeoutError:
            transcript.note(f"Timed out after {timeout:g}s")
            return self._failure(
                NetworkTimeoutError(
                    f"Connection timeout after {timeout:g}s",
                    details={"endpoint": credentials.endpoint},
                ),
                transcript,
            )
        except MailFetchError as e:
            return self._failure(e, transcript)

        return FetchResult(success=True, message=message, debug=transcript.render())

    def _to_records(self, window: Dict[int, Tuple[str, str]]) -> List[MessageRecord]:
        records: List[MessageRecord] = []

        for sequence in sorted(window, reverse=True):
            header_block, body = window[sequence]
            records.append(
                EmailParser.from_parts(
                    header_block,
                    body,
                    max_chars=self.config.body_max_chars,
                    use_message_id=True,
                )
            )

        return records

    @staticmethod
    def _failure(error: MailFetchError, transcript: Transcript) -> FetchResult:
        logger.warning(
            f"IMAP operation failed: {error.message}",
            extra={"error_type": type(error).__name__},
        )
        return FetchResult.failure(error.describe(), debug=transcript.render())
