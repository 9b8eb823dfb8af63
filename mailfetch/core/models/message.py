"""Message models produced by a fetch."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class Placeholders:
    """Literal values substituted for missing message fields."""

    NO_SUBJECT = "(No Subject)"
    NO_CONTENT = "(No content)"
    UNKNOWN_SENDER = "Unknown"


def generate_message_id() -> str:
    """Random local identifier for messages without a usable Message-ID."""
    return f"email_{int(datetime.now().timestamp() * 1000)}_{uuid.uuid4().hex[:7]}"


@dataclass
class RawMessageBlock:
    """Unparsed header+body text for one retrieved POP3 message."""

    sequence: int
    size: int
    data: str = ""


@dataclass
class MimePart:
    """Top-level description of a MIME body, decoded on demand."""

    content_type: str
    charset: str
    transfer_encoding: str
    raw: str
    boundary: Optional[str] = None

    @property
    def is_multipart(self) -> bool:
        return self.content_type.startswith("multipart/")


@dataclass
class MessageRecord:
    """Normalised, display-ready message."""

    id: str = field(default_factory=generate_message_id)
    sender: str = Placeholders.UNKNOWN_SENDER
    from_email: str = ""
    subject: str = Placeholders.NO_SUBJECT
    date: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    body: str = Placeholders.NO_CONTENT
    read: bool = True
    starred: bool = False
    to_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation with the keys the inbox front end expects."""
        data = {
            "id": self.id,
            "from": self.sender,
            "fromEmail": self.from_email,
            "subject": self.subject,
            "date": self.date,
            "body": self.body,
            "read": self.read,
            "starred": self.starred,
        }
        if self.to_email is not None:
            data["toEmail"] = self.to_email
        return data


@dataclass
class FetchResult:
    """Outcome of a fetch or connectivity test."""

    success: bool
    emails: List[MessageRecord] = field(default_factory=list)
    error: Optional[str] = None
    debug: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def failure(cls, error: str, debug: Optional[str] = None) -> "FetchResult":
        return cls(success=False, error=error, debug=debug)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "emails": [email.to_dict() for email in self.emails],
        }
        for key in ("error", "debug", "message"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data
