"""Mailbox connection models."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class EncryptionMode(str, Enum):
    """How the byte stream to the server is protected.

    Values follow the settings vocabulary users already know:
    ``ssl`` is TLS from the first byte, ``tls`` is a plaintext connection
    upgraded in-session (STLS / STARTTLS).
    """

    NONE = "none"
    IMPLICIT_TLS = "ssl"
    STARTTLS = "tls"


class MailProtocol(str, Enum):
    """Retrieval protocol."""

    POP3 = "pop"
    IMAP = "imap"


class MailboxCredentials(BaseModel):
    """Immutable connection input for one fetch invocation."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    username: str = Field(min_length=1)
    secret: SecretStr
    encryption: EncryptionMode = EncryptionMode.NONE

    @field_validator("secret")
    @classmethod
    def _secret_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("secret cannot be empty")
        return value

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


class ServerSettings(BaseModel):
    """Loosely-filled server settings as entered by a user.

    Everything is optional here; ``MailFetchService`` validates the
    fields and turns them into ``MailboxCredentials``.
    """

    host: str = ""
    port: Optional[int] = None
    username: str = ""
    password: str = ""
    encryption: Optional[EncryptionMode] = None

    @field_validator("port", mode="before")
    @classmethod
    def _lenient_port(cls, value: Any) -> Optional[int]:
        if value in (None, ""):
            return None
        try:
            port = int(value)
        except (TypeError, ValueError):
            return None
        return port or None

    @field_validator("encryption", mode="before")
    @classmethod
    def _lenient_encryption(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return value.strip().lower()
        return value


class FetchRequest(BaseModel):
    """A fetch or connectivity-test request for one mailbox."""

    protocol: Optional[MailProtocol] = None
    imap: Optional[ServerSettings] = None
    pop: Optional[ServerSettings] = None
    folder: str = "INBOX"
