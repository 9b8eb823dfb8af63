"""Domain models for mailbox retrieval."""

from .mailbox import (
    EncryptionMode,
    FetchRequest,
    MailboxCredentials,
    MailProtocol,
    ServerSettings,
)
from .message import (
    FetchResult,
    MessageRecord,
    MimePart,
    Placeholders,
    RawMessageBlock,
)

__all__ = [
    "EncryptionMode",
    "FetchRequest",
    "FetchResult",
    "MailboxCredentials",
    "MailProtocol",
    "MessageRecord",
    "MimePart",
    "Placeholders",
    "RawMessageBlock",
    "ServerSettings",
]
